# services/upload_service.py
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from uuid import uuid4

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from config import MIB, StorageSettings, UploadPolicy
from models.upload_models import (
    AssetKind,
    CompletedPart,
    FinalizeAck,
    MultipartSessionGrant,
    MultipartSessionRecord,
    PartCredential,
    SingleShotGrant,
)
from services.exceptions import (
    PolicyViolationError,
    SessionIncompleteError,
    SessionNotFoundError,
    StorageBackendError,
)
from services.key_service import category_for_content_type, derive_storage_key
from services.policy_service import validate_upload
from services.session_store import SessionStore

logger = logging.getLogger(__name__)

# S3 multipart limits
MIN_PART_SIZE = 5 * MIB
MAX_PART_COUNT = 10000


def _normalize_etag(etag: Optional[str]) -> str:
    return (etag or "").strip().strip('"')


class UploadService:
    """Credential broker: mints presigned URLs and owns multipart session lifecycle.

    Object bytes never pass through this class; it only talks to the storage
    service's control plane.
    """

    def __init__(
        self,
        policy: Optional[UploadPolicy] = None,
        settings: Optional[StorageSettings] = None,
        s3_client=None,
        session_store: Optional[SessionStore] = None,
    ):
        self.policy = policy or UploadPolicy.from_env()
        settings = settings or StorageSettings()

        if s3_client is None:
            s3_client = boto3.client(
                "s3",
                region_name=settings.aws_region,
                aws_access_key_id=settings.aws_access_key,
                aws_secret_access_key=settings.aws_secret_key,
                endpoint_url=settings.endpoint_url or None,
                config=Config(signature_version="s3v4"),
            )
        self.s3_client = s3_client
        self.bucket_name = settings.bucket_name
        self.sessions = session_store or SessionStore(settings=settings)

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def _resolve_category(self, content_type: str, category: Optional[AssetKind]) -> AssetKind:
        resolved = category or category_for_content_type(content_type)
        if resolved is None:
            raise PolicyViolationError(f"Cannot determine asset kind for {content_type or '<empty>'}")
        return resolved

    async def authorize_single_shot(
        self,
        filename: str,
        content_type: str,
        declared_size: int,
        namespace: Optional[str] = None,
        category: Optional[AssetKind] = None,
        duration: Optional[float] = None,
    ) -> SingleShotGrant:
        """Validate the declared upload, then presign one PUT for the whole object"""
        category = self._resolve_category(content_type, category)
        validate_upload(self.policy, category, content_type, declared_size, duration)

        now = self._now()
        storage_key = derive_storage_key(category, namespace, filename, now)
        expires_in = self.policy.single_shot_expiry_seconds

        try:
            url = self.s3_client.generate_presigned_url(
                "put_object",
                Params={
                    "Bucket": self.bucket_name,
                    "Key": storage_key,
                    "ContentType": content_type,
                    "ACL": "private",
                },
                ExpiresIn=expires_in,
                HttpMethod="PUT",
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to presign single-shot upload for {storage_key}: {e}")
            raise StorageBackendError(str(e)) from e

        logger.info(f"Issued single-shot credential: key={storage_key}, size={declared_size}")
        return SingleShotGrant(
            upload_url=url,
            storage_key=storage_key,
            expires_at=now + timedelta(seconds=expires_in),
        )

    async def open_multipart_session(
        self,
        filename: str,
        content_type: str,
        declared_size: int,
        duration: Optional[float] = None,
        namespace: Optional[str] = None,
        part_size: Optional[int] = None,
        category: Optional[AssetKind] = None,
    ) -> MultipartSessionGrant:
        """Validate the declared upload, then open a multipart upload on S3.

        A policy violation raises before create_multipart_upload is called, so
        no session is ever orphaned by a rejected request.
        """
        category = self._resolve_category(content_type, category)
        validate_upload(self.policy, category, content_type, declared_size, duration)

        part_size = part_size or self.policy.part_size
        if part_size < MIN_PART_SIZE:
            raise PolicyViolationError(f"Part size must be at least {MIN_PART_SIZE // MIB}MB")
        part_count = math.ceil(declared_size / part_size)
        if part_count > MAX_PART_COUNT:
            raise PolicyViolationError(f"Upload would need {part_count} parts (max {MAX_PART_COUNT})")

        now = self._now()
        storage_key = derive_storage_key(category, namespace, filename, now)

        try:
            response = self.s3_client.create_multipart_upload(
                Bucket=self.bucket_name,
                Key=storage_key,
                ContentType=content_type,
                ACL="private",
                Metadata={
                    "original-filename": filename,
                    "file-size": str(declared_size),
                },
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to open multipart session for {storage_key}: {e}")
            raise StorageBackendError(str(e)) from e

        session_id = response["UploadId"]
        record = MultipartSessionRecord(
            session_id=session_id,
            storage_key=storage_key,
            filename=filename,
            content_type=content_type,
            declared_size=declared_size,
            duration=duration,
            part_size=part_size,
            part_count=part_count,
            created_at=now,
            expires_at=now + self.sessions.ttl,
        )
        self.sessions.save(record)

        logger.info(
            f"Opened multipart session: key={storage_key}, session={session_id}, "
            f"parts={part_count}, part_size={part_size}"
        )
        return MultipartSessionGrant(
            storage_key=storage_key,
            session_id=session_id,
            part_size=part_size,
            part_count=part_count,
        )

    async def get_session(self, session_id: str) -> MultipartSessionRecord:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return session

    async def authorize_part(self, session_id: str, part_number: int) -> PartCredential:
        """Presign an upload_part URL. Repeating a pair mints a new credential."""
        session = await self.get_session(session_id)
        if part_number < 1 or part_number > session.part_count:
            raise PolicyViolationError(
                f"Part number {part_number} outside 1..{session.part_count}"
            )

        now = self._now()
        expires_in = self.policy.part_expiry_seconds
        try:
            url = self.s3_client.generate_presigned_url(
                "upload_part",
                Params={
                    "Bucket": self.bucket_name,
                    "Key": session.storage_key,
                    "UploadId": session.session_id,
                    "PartNumber": part_number,
                },
                ExpiresIn=expires_in,
                HttpMethod="PUT",
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Failed to presign part {part_number} of session {session_id}: {e}")
            raise StorageBackendError(str(e)) from e

        logger.debug(f"Issued part credential: session={session_id}, part={part_number}")
        return PartCredential(
            session_id=session_id,
            part_number=part_number,
            part_url=url,
            credential_id=str(uuid4()),
            expires_at=now + timedelta(seconds=expires_in),
        )

    async def finalize(
        self, session_id: str, storage_key: str, completed_parts: List[CompletedPart]
    ) -> FinalizeAck:
        """Complete the multipart upload with a manifest sorted by part number.

        An incomplete manifest raises SessionIncompleteError and leaves the
        session open so the caller can upload the missing parts and retry.
        """
        session = await self.get_session(session_id)
        if session.storage_key != storage_key:
            raise PolicyViolationError("Storage key does not match session")

        by_number: Dict[int, str] = {}
        for part in completed_parts:
            by_number[part.part_number] = _normalize_etag(part.checksum)

        expected = set(range(1, session.part_count + 1))
        missing = expected - {n for n, etag in by_number.items() if etag}
        unexpected = set(by_number) - expected
        if unexpected:
            raise PolicyViolationError(f"Unexpected part numbers: {sorted(unexpected)}")
        if missing:
            logger.warning(
                f"Finalize rejected, session incomplete: session={session_id}, "
                f"missing={sorted(missing)}"
            )
            raise SessionIncompleteError(missing)

        manifest = [
            {"ETag": by_number[n], "PartNumber": n} for n in sorted(by_number)
        ]

        try:
            response = self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=session.storage_key,
                UploadId=session.session_id,
                MultipartUpload={"Parts": manifest},
            )
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "")
            if code == "NoSuchUpload":
                self.sessions.delete(session_id)
                raise SessionNotFoundError(f"Session {session_id} no longer exists") from e
            if code in ("InvalidPart", "InvalidPartOrder", "EntityTooSmall"):
                missing = self._reconcile_parts(session, by_number)
                logger.warning(
                    f"Storage rejected manifest ({code}): session={session_id}, "
                    f"missing={missing}"
                )
                raise SessionIncompleteError(missing or sorted(expected)) from e
            logger.error(f"Failed to finalize session {session_id}: {e}")
            raise StorageBackendError(str(e)) from e
        except BotoCoreError as e:
            logger.error(f"Failed to finalize session {session_id}: {e}")
            raise StorageBackendError(str(e)) from e

        self.sessions.delete(session_id)
        logger.info(f"Finalized multipart session: key={storage_key}, parts={len(manifest)}")
        return FinalizeAck(
            storage_key=session.storage_key,
            etag=response.get("ETag"),
            location=response.get("Location"),
        )

    def _reconcile_parts(self, session: MultipartSessionRecord, claimed: Dict[int, str]) -> List[int]:
        """Part numbers whose claimed ETag the storage service does not hold"""
        stored: Dict[int, str] = {}
        kwargs = {
            "Bucket": self.bucket_name,
            "Key": session.storage_key,
            "UploadId": session.session_id,
        }
        while True:
            try:
                response = self.s3_client.list_parts(**kwargs)
            except (BotoCoreError, ClientError) as e:
                raise StorageBackendError(f"Could not list parts: {e}") from e
            for part in response.get("Parts", []):
                stored[part["PartNumber"]] = _normalize_etag(part.get("ETag"))
            if not response.get("IsTruncated"):
                break
            kwargs["PartNumberMarker"] = response["NextPartNumberMarker"]

        return [n for n in range(1, session.part_count + 1) if stored.get(n) != claimed.get(n)]

    async def abort(self, session_id: str) -> None:
        """Abort an open session and release its stored parts"""
        session = await self.get_session(session_id)
        try:
            self.s3_client.abort_multipart_upload(
                Bucket=self.bucket_name,
                Key=session.storage_key,
                UploadId=session.session_id,
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") != "NoSuchUpload":
                raise StorageBackendError(str(e)) from e
        self.sessions.delete(session_id)
        logger.info(f"Aborted multipart session: key={session.storage_key}, session={session_id}")
