"""Tests for upload policy validation."""

from datetime import timedelta

import pytest

from config import MIB, StorageSettings, UploadPolicy
from models.upload_models import AssetKind
from services.exceptions import PolicyViolationError
from services.policy_service import validate_upload


def test_image_within_limits(policy):
    validate_upload(policy, AssetKind.IMAGE, "image/png", 5 * MIB)


def test_image_over_limit(policy):
    with pytest.raises(PolicyViolationError, match="Image size"):
        validate_upload(policy, AssetKind.IMAGE, "image/png", 6 * MIB)


def test_image_wrong_type(policy):
    with pytest.raises(PolicyViolationError, match="not an image"):
        validate_upload(policy, AssetKind.IMAGE, "video/mp4", 100)


@pytest.mark.parametrize("size", [0, -1])
def test_non_positive_size(policy, size):
    with pytest.raises(PolicyViolationError):
        validate_upload(policy, AssetKind.IMAGE, "image/png", size)


def test_video_allowed_types(policy):
    for content_type in ("video/mp4", "video/quicktime", "video/webm", "video/ogg"):
        validate_upload(policy, AssetKind.VIDEO, content_type, 20 * MIB, duration=30)


def test_video_disallowed_type(policy):
    with pytest.raises(PolicyViolationError, match="not an allowed video type"):
        validate_upload(policy, AssetKind.VIDEO, "video/x-msvideo", 20 * MIB)


def test_video_over_size(policy):
    with pytest.raises(PolicyViolationError, match="Video size"):
        validate_upload(policy, AssetKind.VIDEO, "video/mp4", 1024 * MIB + 1)


def test_video_over_duration(policy):
    with pytest.raises(PolicyViolationError, match="duration"):
        validate_upload(policy, AssetKind.VIDEO, "video/mp4", MIB, duration=601)


def test_video_without_duration_is_allowed(policy):
    validate_upload(policy, AssetKind.VIDEO, "video/mp4", MIB)


def test_policy_override():
    strict = UploadPolicy(image_max_bytes=1024)
    with pytest.raises(PolicyViolationError):
        validate_upload(strict, AssetKind.IMAGE, "image/jpeg", 2048)


def test_policy_from_env(monkeypatch):
    monkeypatch.setenv("UPLOAD_MAX_IMAGE_MB", "2")
    monkeypatch.setenv("UPLOAD_VIDEO_MIME_TYPES", "video/mp4, video/webm")
    monkeypatch.setenv("UPLOAD_CONCURRENCY", "6")

    loaded = UploadPolicy.from_env()

    assert loaded.image_max_bytes == 2 * MIB
    assert loaded.video_mime_types == ("video/mp4", "video/webm")
    assert loaded.concurrency == 6
    assert loaded.part_size == 8 * MIB
    assert loaded.retry_backoff_seconds == 0.5


def test_policy_from_env_backoff(monkeypatch):
    monkeypatch.setenv("UPLOAD_RETRY_BACKOFF_SECONDS", "0.25")
    monkeypatch.setenv("UPLOAD_PART_SIZE_MB", "16")

    loaded = UploadPolicy.from_env()

    assert loaded.retry_backoff_seconds == 0.25
    assert loaded.part_size == 16 * MIB


def test_storage_settings_from_env(monkeypatch):
    monkeypatch.setenv("AWS_ACCESS_KEY", "test-access")
    monkeypatch.setenv("BUCKET_NAME", "media-bucket")
    monkeypatch.setenv("S3_ENDPOINT_URL", "http://minio:9000")
    monkeypatch.setenv("REDIS_PORT", "6380")
    monkeypatch.setenv("UPLOAD_SESSION_TTL_HOURS", "2")

    settings = StorageSettings()

    assert settings.aws_access_key == "test-access"
    assert settings.bucket_name == "media-bucket"
    assert settings.endpoint_url == "http://minio:9000"
    assert settings.redis_port == 6380
    assert settings.session_ttl == timedelta(hours=2)
