# config.py
from datetime import timedelta
from typing import Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

MIB = 1024 * 1024

DEFAULT_VIDEO_MIME_TYPES = (
    "video/mp4",
    "video/quicktime",
    "video/webm",
    "video/ogg",
)


class UploadPolicy(BaseModel):
    """Size, type and duration limits plus transfer tuning for uploads"""
    model_config = ConfigDict(frozen=True)

    image_max_bytes: int = 5 * MIB
    image_mime_prefix: str = "image/"
    video_max_bytes: int = 1024 * MIB
    video_max_seconds: float = 600
    video_mime_types: Tuple[str, ...] = DEFAULT_VIDEO_MIME_TYPES

    single_shot_threshold: int = 5 * MIB
    part_size: int = 8 * MIB
    concurrency: int = 4
    max_part_attempts: int = 3
    retry_backoff_seconds: float = 0.5

    single_shot_expiry_seconds: int = 5 * 60
    part_expiry_seconds: int = 10 * 60

    max_images: int = 10
    max_videos: int = 3

    @classmethod
    def from_env(cls) -> "UploadPolicy":
        return UploadPolicySettings().to_policy()


class UploadPolicySettings(BaseSettings):
    """UPLOAD_* environment variables; sizes are given in MB"""

    model_config = SettingsConfigDict(
        env_prefix="UPLOAD_",
        env_file=".env",
        extra="ignore",
    )

    max_image_mb: int = 5
    max_video_mb: int = 1024
    max_video_seconds: float = 600
    video_mime_types: str = ""  # Comma-separated, empty = default list
    single_shot_threshold_mb: int = 5
    part_size_mb: int = 8
    concurrency: int = 4
    max_part_attempts: int = 3
    retry_backoff_seconds: float = 0.5
    max_images: int = 10
    max_videos: int = 3

    def to_policy(self) -> UploadPolicy:
        video_types = tuple(t.strip() for t in self.video_mime_types.split(",") if t.strip())
        return UploadPolicy(
            image_max_bytes=self.max_image_mb * MIB,
            video_max_bytes=self.max_video_mb * MIB,
            video_max_seconds=self.max_video_seconds,
            video_mime_types=video_types or DEFAULT_VIDEO_MIME_TYPES,
            single_shot_threshold=self.single_shot_threshold_mb * MIB,
            part_size=self.part_size_mb * MIB,
            concurrency=self.concurrency,
            max_part_attempts=self.max_part_attempts,
            retry_backoff_seconds=self.retry_backoff_seconds,
            max_images=self.max_images,
            max_videos=self.max_videos,
        )


class StorageSettings(BaseSettings):
    """Connection settings for the object store and the session registry"""

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        frozen=True,
        populate_by_name=True,
    )

    aws_access_key: Optional[str] = None
    aws_secret_key: Optional[str] = None
    aws_region: str = "us-east-1"
    bucket_name: Optional[str] = None
    endpoint_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("S3_ENDPOINT_URL", "endpoint_url")
    )

    redis_host: str = "redis"
    redis_port: int = 6379
    redis_password: str = ""
    redis_db: int = 0

    # Session records outlive the longest part credential
    session_ttl_hours: int = Field(
        default=24, validation_alias=AliasChoices("UPLOAD_SESSION_TTL_HOURS", "session_ttl_hours")
    )

    @property
    def session_ttl(self) -> timedelta:
        return timedelta(hours=self.session_ttl_hours)
