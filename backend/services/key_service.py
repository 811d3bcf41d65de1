# services/key_service.py
from datetime import datetime
from typing import Optional
from uuid import uuid4

from models.upload_models import AssetKind

DEFAULT_PREFIX = "uploads"

CATEGORY_FOLDERS = {
    AssetKind.IMAGE: "images",
    AssetKind.VIDEO: "videos",
}


def get_file_extension(filename: Optional[str]) -> str:
    """Lowercased last dot-segment of a filename, or "" when there is none"""
    if not filename:
        return ""
    parts = filename.split(".")
    if len(parts) < 2:
        return ""
    return parts[-1].lower()


def category_for_content_type(content_type: Optional[str]) -> Optional[AssetKind]:
    content_type = (content_type or "").lower()
    if content_type.startswith("image/"):
        return AssetKind.IMAGE
    if content_type.startswith("video/"):
        return AssetKind.VIDEO
    return None


def derive_storage_key(
    category: AssetKind,
    namespace: Optional[str],
    filename: Optional[str],
    now: datetime,
) -> str:
    """Build `{namespace|uploads}/{images|videos}/{YYYY}/{MM}/{uuid}.{ext}`.

    Never raises: unknown categories fall back to their raw value and a
    missing extension simply drops the suffix.
    """
    prefix = (namespace or "").strip().strip("/")
    if not prefix:
        prefix = DEFAULT_PREFIX

    try:
        folder = CATEGORY_FOLDERS.get(AssetKind(category), str(category))
    except ValueError:
        folder = str(category)

    extension = get_file_extension(filename)
    name = str(uuid4())
    if extension:
        name = f"{name}.{extension}"

    return "/".join([prefix, folder, f"{now.year:04d}", f"{now.month:02d}", name])
