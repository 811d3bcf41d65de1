# models/upload_models.py
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import List, Optional
from datetime import datetime
from enum import Enum


class AssetKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class ApiModel(BaseModel):
    """camelCase on the wire, snake_case in Python"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SingleShotRequest(ApiModel):
    filename: str
    content_type: str
    declared_size: int
    namespace: Optional[str] = None
    category: Optional[AssetKind] = None
    duration: Optional[float] = None


class SingleShotGrant(ApiModel):
    upload_url: str
    storage_key: str
    expires_at: datetime


class MultipartStartRequest(ApiModel):
    filename: str
    content_type: str
    declared_size: int
    category: Optional[AssetKind] = None
    duration: Optional[float] = None
    namespace: Optional[str] = None
    part_size: Optional[int] = None


class MultipartSessionGrant(ApiModel):
    storage_key: str
    session_id: str
    part_size: int
    part_count: int


class PartUrlRequest(ApiModel):
    session_id: str
    part_number: int


class PartCredential(ApiModel):
    session_id: str
    part_number: int
    part_url: str
    credential_id: str
    expires_at: datetime


class CompletedPart(ApiModel):
    part_number: int
    checksum: str


class CompleteUploadRequest(ApiModel):
    session_id: str
    storage_key: str
    completed_parts: List[CompletedPart]


class FinalizeAck(ApiModel):
    ok: bool = True
    storage_key: str
    etag: Optional[str] = None
    location: Optional[str] = None


class AbortRequest(ApiModel):
    session_id: str


class MultipartSessionRecord(ApiModel):
    session_id: str
    storage_key: str
    filename: str
    content_type: str
    declared_size: int
    duration: Optional[float] = None
    part_size: int
    part_count: int
    created_at: datetime
    expires_at: datetime


class SubmittedAsset(ApiModel):
    key: str
    original_filename: str
    order: int


class SubmissionRequest(ApiModel):
    name: str
    images: List[SubmittedAsset] = Field(default_factory=list)
    videos: List[SubmittedAsset] = Field(default_factory=list)


class SubmissionResponse(ApiModel):
    ok: bool = True
    id: str
