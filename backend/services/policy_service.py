# services/policy_service.py
from typing import Optional

from config import MIB, UploadPolicy
from models.upload_models import AssetKind
from services.exceptions import PolicyViolationError


def _mib(size: int) -> str:
    return f"{size / MIB:g}MB"


def validate_upload(
    policy: UploadPolicy,
    category: AssetKind,
    content_type: str,
    declared_size: int,
    duration: Optional[float] = None,
) -> None:
    """Raise PolicyViolationError if the declared upload breaks the policy.

    The duration is whatever the client reports; nothing here inspects the
    media itself.
    """
    content_type = (content_type or "").lower()

    if declared_size is None or declared_size <= 0:
        raise PolicyViolationError("Declared size must be positive")

    if category == AssetKind.IMAGE:
        if not content_type.startswith(policy.image_mime_prefix):
            raise PolicyViolationError(f"Content type {content_type or '<empty>'} is not an image")
        if declared_size > policy.image_max_bytes:
            raise PolicyViolationError(
                f"Image size exceeds {_mib(policy.image_max_bytes)} limit"
            )
        return

    if category == AssetKind.VIDEO:
        if content_type not in policy.video_mime_types:
            raise PolicyViolationError(f"Content type {content_type or '<empty>'} is not an allowed video type")
        if declared_size > policy.video_max_bytes:
            raise PolicyViolationError(
                f"Video size exceeds {_mib(policy.video_max_bytes)} limit"
            )
        if duration is not None:
            if duration < 0:
                raise PolicyViolationError("Video duration cannot be negative")
            if duration > policy.video_max_seconds:
                raise PolicyViolationError(
                    f"Video duration exceeds {policy.video_max_seconds:g} seconds"
                )
        return

    raise PolicyViolationError(f"Unsupported category: {category}")
