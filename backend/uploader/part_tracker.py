# uploader/part_tracker.py
import asyncio
import math
from typing import Dict, Iterable, List, Optional, Tuple

from models.upload_models import CompletedPart


class PartTracker:
    """Client-side view of one multipart session.

    Workers claim part numbers from a shared cursor and record the ETag
    returned for each part. Both operations hold the same lock, so no two
    workers claim one number and no completion is lost.
    """

    def __init__(self, file_size: int, part_size: int):
        if part_size <= 0:
            raise ValueError("part_size must be positive")
        self.file_size = file_size
        self.part_size = part_size
        self.part_count = max(1, math.ceil(file_size / part_size))

        self._lock = asyncio.Lock()
        self._pending: List[int] = list(range(1, self.part_count + 1))
        self._cursor = 0
        self._completed: Dict[int, str] = {}

    @property
    def expected_parts(self) -> range:
        return range(1, self.part_count + 1)

    def byte_range(self, part_number: int) -> Tuple[int, int]:
        """(offset, length) of a part within the file"""
        if part_number < 1 or part_number > self.part_count:
            raise ValueError(f"Part number {part_number} outside 1..{self.part_count}")
        start = (part_number - 1) * self.part_size
        end = min(start + self.part_size, self.file_size)
        return start, end - start

    async def claim(self) -> Optional[int]:
        """Next unclaimed part number, or None when the queue is drained"""
        async with self._lock:
            if self._cursor >= len(self._pending):
                return None
            part_number = self._pending[self._cursor]
            self._cursor += 1
            return part_number

    async def complete(self, part_number: int, etag: str) -> None:
        """Insert or update the checksum recorded for a part"""
        if part_number not in self.expected_parts:
            raise ValueError(f"Part number {part_number} outside 1..{self.part_count}")
        async with self._lock:
            self._completed[part_number] = etag

    async def requeue(self, part_numbers: Iterable[int]) -> List[int]:
        """Forget the given parts and make them claimable again"""
        async with self._lock:
            parts = sorted({n for n in part_numbers if n in self.expected_parts})
            for n in parts:
                self._completed.pop(n, None)
            self._pending = parts
            self._cursor = 0
            return parts

    @property
    def completed_count(self) -> int:
        return len(self._completed)

    @property
    def progress(self) -> float:
        return self.completed_count / self.part_count

    def is_complete(self) -> bool:
        return set(self._completed) == set(self.expected_parts)

    def missing_parts(self) -> List[int]:
        return [n for n in self.expected_parts if n not in self._completed]

    def sorted_manifest(self) -> List[CompletedPart]:
        return [
            CompletedPart(part_number=n, checksum=self._completed[n])
            for n in sorted(self._completed)
        ]
