# uploader/coordinator.py
"""Drives uploads of UploadTargets straight to storage using broker credentials.

Small files go up in one presigned PUT. Larger files are split into fixed-size
parts that a bounded pool of workers uploads concurrently, each part with its
own short-lived credential, before the session is finalized with a sorted
manifest.
"""

import asyncio
import logging
from typing import Callable, List, Optional, Sequence

from config import UploadPolicy
from models.upload_models import MultipartSessionGrant
from models.upload_state import (
    Done,
    Failed,
    Finalizing,
    MultipartOpening,
    Pending,
    SingleShot,
    Transferring,
    UploadResult,
    UploadState,
    UploadTarget,
)
from services.exceptions import (
    SessionIncompleteError,
    TransferError,
    UploadCancelledError,
    UploadError,
)
from services.policy_service import validate_upload
from uploader.broker_client import BrokerClient, read_range, stream_payload
from uploader.part_tracker import PartTracker

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]

INTERNAL_ERROR = "internal_error"


class UploadJob:
    """A single target's upload: its state, progress, and cancellation handle"""

    def __init__(self, index: int, target: UploadTarget,
                 on_progress: Optional[ProgressCallback] = None):
        self.index = index
        self.target = target
        self.state: UploadState = Pending()
        self.progress = 0.0
        self._on_progress = on_progress
        self._cancelled = asyncio.Event()
        self._workers: List[asyncio.Task] = []
        self._task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Stop claiming parts, abort in-flight transfers, never finalize"""
        if self.cancelled or isinstance(self.state, (Done, Failed)):
            return
        self._cancelled.set()
        if self._workers:
            for worker in self._workers:
                worker.cancel()
        elif self._task is not None and not self._task.done():
            self._task.cancel()
        logger.info(f"Upload cancelled: {self.target.filename} (state={self.state.name})")

    def _set_state(self, state: UploadState) -> None:
        logger.debug(f"{self.target.filename}: {self.state.name} -> {state.name}")
        self.state = state

    def _report(self, fraction: float) -> None:
        self.progress = fraction
        if self._on_progress:
            self._on_progress(fraction)

    def _check_cancelled(self) -> None:
        if self.cancelled:
            raise UploadCancelledError("Upload cancelled")

    async def result(self) -> UploadResult:
        if self._task is None:
            raise RuntimeError("Upload job was never started")
        try:
            return await self._task
        except asyncio.CancelledError:
            # Cancelled before the task body ran; the job itself is still reportable
            if not (self.cancelled and self._task.cancelled()):
                raise
            self._set_state(Failed(reason=UploadCancelledError.reason, detail="Upload cancelled"))
            return self.to_result()

    def to_result(self) -> UploadResult:
        state = self.state
        if isinstance(state, Done):
            return UploadResult(
                index=self.index,
                filename=self.target.filename,
                category=self.target.category,
                storage_key=state.storage_key,
            )
        reason = state.reason if isinstance(state, Failed) else "incomplete"
        detail = state.detail if isinstance(state, Failed) else ""
        return UploadResult(
            index=self.index,
            filename=self.target.filename,
            category=self.target.category,
            reason=reason,
            detail=detail,
        )


class UploadCoordinator:
    def __init__(self, broker: BrokerClient, policy: Optional[UploadPolicy] = None):
        self.broker = broker
        self.policy = policy or UploadPolicy()

    def start(self, target: UploadTarget, index: int = 0,
              on_progress: Optional[ProgressCallback] = None) -> UploadJob:
        """Schedule an upload on the running loop and return its handle"""
        job = UploadJob(index, target, on_progress)
        job._task = asyncio.create_task(self._run(job))
        return job

    async def upload(self, target: UploadTarget,
                     on_progress: Optional[ProgressCallback] = None) -> UploadResult:
        return await self.start(target, on_progress=on_progress).result()

    async def upload_all(
        self,
        targets: Sequence[UploadTarget],
        on_progress: Optional[Callable[[int, float], None]] = None,
    ) -> List[UploadResult]:
        """Upload every target concurrently; results keep submission order"""
        jobs = []
        for i, target in enumerate(targets):
            callback = None
            if on_progress:
                callback = (lambda idx: lambda p: on_progress(idx, p))(i)
            jobs.append(self.start(target, index=i, on_progress=callback))
        return list(await asyncio.gather(*(job.result() for job in jobs)))

    async def _run(self, job: UploadJob) -> UploadResult:
        target = job.target
        try:
            validate_upload(
                self.policy, target.category, target.content_type, target.size, target.duration
            )
            if target.size <= self.policy.single_shot_threshold:
                await self._single_shot(job)
            else:
                await self._multipart(job)
        except UploadError as e:
            job._set_state(Failed(reason=e.reason, detail=str(e)))
            logger.warning(f"Upload failed: {target.filename} ({e.reason}): {e}")
        except asyncio.CancelledError:
            if not job.cancelled:
                raise
            job._set_state(Failed(reason=UploadCancelledError.reason, detail="Upload cancelled"))
        except Exception as e:
            # Any other failure stays local to this target
            logger.exception(f"Unexpected error uploading {target.filename}")
            job._set_state(Failed(reason=INTERNAL_ERROR, detail=str(e)))
        return job.to_result()

    async def _single_shot(self, job: UploadJob) -> None:
        target = job.target
        job._set_state(SingleShot())
        job._check_cancelled()

        grant = await self.broker.authorize_single_shot(target)
        job._check_cancelled()
        job._set_state(Transferring(storage_key=grant.storage_key))

        def on_bytes(sent: int) -> None:
            job._report(sent / target.size)

        # One credential, one write; the credential is not reused on failure
        await self.broker.put_object(
            grant.upload_url,
            stream_payload(target.source, target.size, on_bytes),
            size=target.size,
            expires_at=grant.expires_at,
            content_type=target.content_type,
        )
        job._report(1.0)
        job._set_state(Done(storage_key=grant.storage_key))
        logger.info(f"Uploaded {target.filename} -> {grant.storage_key}")

    async def _multipart(self, job: UploadJob) -> None:
        target = job.target
        job._set_state(MultipartOpening())
        job._check_cancelled()

        grant = await self.broker.open_multipart(target, self.policy.part_size)
        tracker = PartTracker(target.size, grant.part_size)
        if tracker.part_count != grant.part_count:
            raise TransferError(
                f"Part count mismatch: broker expects {grant.part_count}, computed {tracker.part_count}"
            )
        job._set_state(Transferring(
            storage_key=grant.storage_key,
            session_id=grant.session_id,
            part_count=tracker.part_count,
        ))
        logger.info(
            f"Multipart upload started: {target.filename} -> {grant.storage_key} "
            f"({tracker.part_count} parts)"
        )

        await self._transfer_parts(job, grant, tracker)

        try:
            await self._finalize(job, grant, tracker)
        except SessionIncompleteError as e:
            # One corrective pass: re-upload what the backend is missing, then retry once
            logger.warning(
                f"Session incomplete for {grant.storage_key}, re-uploading parts {e.missing_parts}"
            )
            await tracker.requeue(e.missing_parts or tracker.missing_parts())
            job._set_state(Transferring(
                storage_key=grant.storage_key,
                session_id=grant.session_id,
                part_count=tracker.part_count,
            ))
            await self._transfer_parts(job, grant, tracker)
            await self._finalize(job, grant, tracker)

        job._set_state(Done(storage_key=grant.storage_key))
        logger.info(f"Uploaded {target.filename} -> {grant.storage_key}")

    async def _finalize(self, job: UploadJob, grant: MultipartSessionGrant,
                        tracker: PartTracker) -> None:
        job._check_cancelled()
        if not tracker.is_complete():
            raise SessionIncompleteError(tracker.missing_parts())
        job._set_state(Finalizing(storage_key=grant.storage_key, session_id=grant.session_id))
        await self.broker.finalize(grant.session_id, grant.storage_key, tracker.sorted_manifest())

    async def _transfer_parts(self, job: UploadJob, grant: MultipartSessionGrant,
                              tracker: PartTracker) -> None:
        """Run the worker pool until every queued part is stored or one fails"""
        worker_count = max(1, min(self.policy.concurrency, tracker.part_count))
        job._workers = [
            asyncio.create_task(self._worker(job, grant, tracker))
            for _ in range(worker_count)
        ]
        try:
            done, pending = await asyncio.wait(job._workers, return_when=asyncio.FIRST_EXCEPTION)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            job._check_cancelled()
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    raise task.exception()
        finally:
            for task in job._workers:
                task.cancel()
            job._workers = []

    async def _worker(self, job: UploadJob, grant: MultipartSessionGrant,
                      tracker: PartTracker) -> None:
        while not job.cancelled:
            part_number = await tracker.claim()
            if part_number is None:
                return
            etag = await self._upload_part(job, grant, tracker, part_number)
            await tracker.complete(part_number, etag)
            job._report(tracker.progress)

    async def _upload_part(self, job: UploadJob, grant: MultipartSessionGrant,
                           tracker: PartTracker, part_number: int) -> str:
        offset, length = tracker.byte_range(part_number)
        data = await read_range(job.target.source, offset, length)

        attempts = self.policy.max_part_attempts
        for attempt in range(1, attempts + 1):
            job._check_cancelled()
            # Every attempt gets a fresh credential
            credential = await self.broker.authorize_part(grant.session_id, part_number)
            try:
                return await self.broker.put_object(
                    credential.part_url, data, size=length, expires_at=credential.expires_at
                )
            except UploadError as e:
                if not e.retriable:
                    raise
                logger.warning(
                    f"Part {part_number} of {grant.storage_key} failed "
                    f"(attempt {attempt}/{attempts}, {e.reason}): {e}"
                )
                if attempt == attempts:
                    raise TransferError(
                        f"Part {part_number} failed after {attempts} attempts: {e}"
                    ) from e
            await asyncio.sleep(self.policy.retry_backoff_seconds * attempt)
        raise TransferError(f"Part {part_number} was never attempted")
