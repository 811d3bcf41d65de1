"""Tests for storage key derivation."""

import re
from datetime import datetime

from models.upload_models import AssetKind
from services.key_service import (
    category_for_content_type,
    derive_storage_key,
    get_file_extension,
)

UUID = r"[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"
NOW = datetime(2025, 3, 14, 9, 26)


def test_default_prefix_for_video():
    key = derive_storage_key(AssetKind.VIDEO, None, "Clip.MP4", NOW)
    assert re.fullmatch(rf"uploads/videos/2025/03/{UUID}\.mp4", key)


def test_namespace_replaces_default_prefix():
    key = derive_storage_key(AssetKind.IMAGE, "company-a", "logo.png", NOW)
    assert re.fullmatch(rf"company-a/images/2025/03/{UUID}\.png", key)


def test_nested_namespace_is_kept():
    key = derive_storage_key(AssetKind.IMAGE, "users/john", "me.jpg", NOW)
    assert key.startswith("users/john/images/2025/03/")


def test_blank_namespace_falls_back():
    key = derive_storage_key(AssetKind.IMAGE, "   ", "a.gif", NOW)
    assert key.startswith("uploads/images/")


def test_month_is_zero_padded():
    key = derive_storage_key(AssetKind.IMAGE, None, "a.png", datetime(2024, 11, 2))
    assert "/2024/11/" in key
    key = derive_storage_key(AssetKind.IMAGE, None, "a.png", datetime(2024, 1, 2))
    assert "/2024/01/" in key


def test_missing_extension_has_no_suffix():
    key = derive_storage_key(AssetKind.VIDEO, None, "README", NOW)
    assert re.fullmatch(rf"uploads/videos/2025/03/{UUID}", key)


def test_empty_filename_does_not_raise():
    key = derive_storage_key(AssetKind.IMAGE, None, "", NOW)
    assert re.fullmatch(rf"uploads/images/2025/03/{UUID}", key)
    key = derive_storage_key(AssetKind.IMAGE, None, None, NOW)
    assert re.fullmatch(rf"uploads/images/2025/03/{UUID}", key)


def test_keys_are_unique():
    keys = {derive_storage_key(AssetKind.IMAGE, None, "same.png", NOW) for _ in range(500)}
    assert len(keys) == 500


def test_get_file_extension():
    assert get_file_extension("archive.tar.GZ") == "gz"
    assert get_file_extension("noext") == ""
    assert get_file_extension("") == ""
    assert get_file_extension("trailing.") == ""


def test_category_for_content_type():
    assert category_for_content_type("image/png") == AssetKind.IMAGE
    assert category_for_content_type("VIDEO/mp4") == AssetKind.VIDEO
    assert category_for_content_type("application/pdf") is None
    assert category_for_content_type(None) is None
