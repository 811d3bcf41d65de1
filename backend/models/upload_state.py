# models/upload_state.py
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict

from models.upload_models import AssetKind


class UploadTarget(BaseModel):
    """One file to upload. The payload is raw bytes or a path on disk."""
    model_config = ConfigDict(frozen=True)

    category: AssetKind
    filename: str
    size: int
    content_type: str
    source: Union[bytes, Path]
    duration: Optional[float] = None
    namespace: Optional[str] = None

    @classmethod
    def from_path(cls, path: Union[str, Path], category: AssetKind, content_type: str,
                  duration: Optional[float] = None, namespace: Optional[str] = None) -> "UploadTarget":
        path = Path(path)
        return cls(
            category=category,
            filename=path.name,
            size=path.stat().st_size,
            content_type=content_type,
            source=path,
            duration=duration,
            namespace=namespace,
        )


class UploadResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int
    filename: str
    category: AssetKind
    storage_key: Optional[str] = None
    reason: Optional[str] = None
    detail: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.storage_key is not None


# Per-target lifecycle states


@dataclass(frozen=True)
class Pending:
    name = "pending"


@dataclass(frozen=True)
class SingleShot:
    name = "single_shot"


@dataclass(frozen=True)
class MultipartOpening:
    name = "multipart_opening"


@dataclass(frozen=True)
class Transferring:
    storage_key: str
    session_id: Optional[str] = None
    part_count: int = 1
    name = "transferring"


@dataclass(frozen=True)
class Finalizing:
    storage_key: str
    session_id: str
    name = "finalizing"


@dataclass(frozen=True)
class Done:
    storage_key: str
    name = "done"


@dataclass(frozen=True)
class Failed:
    reason: str
    detail: str = ""
    name = "failed"


UploadState = Union[Pending, SingleShot, MultipartOpening, Transferring, Finalizing, Done, Failed]
