# uploader/broker_client.py
"""HTTP client for the credential broker and for direct writes to storage."""

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Callable, Dict, Any, List, Optional, Type, TypeVar, Union

import httpx
from pydantic import BaseModel

from models.upload_models import (
    CompletedPart,
    FinalizeAck,
    MultipartSessionGrant,
    PartCredential,
    SingleShotGrant,
)
from models.upload_state import UploadTarget
from services.exceptions import (
    BrokerResponseError,
    BrokerUnreachableError,
    CredentialExpiredError,
    PolicyViolationError,
    SessionIncompleteError,
    SessionNotFoundError,
    StorageBackendError,
    TransferError,
)

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024

ProgressCallback = Callable[[int], None]
ResponseModel = TypeVar("ResponseModel", bound=BaseModel)


async def read_range(source: Union[bytes, Path], offset: int, length: int) -> bytes:
    """Read `length` bytes at `offset` from an in-memory or on-disk payload"""
    if isinstance(source, (bytes, bytearray)):
        return bytes(source[offset:offset + length])

    def _read() -> bytes:
        with open(source, "rb") as f:
            f.seek(offset)
            return f.read(length)

    return await asyncio.to_thread(_read)


def _seconds_left(expires_at: datetime) -> float:
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return (expires_at - datetime.now(timezone.utc)).total_seconds()


class BrokerClient:
    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        transfer_timeout: float = 300.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self.transfer_timeout = transfer_timeout

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "BrokerClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def _post(self, path: str, payload: Dict[str, Any],
                    model: Type[ResponseModel]) -> ResponseModel:
        try:
            response = await self._client.post(f"{self.base_url}{path}", json=payload)
        except httpx.TransportError as e:
            raise BrokerUnreachableError(f"Broker request to {path} failed: {e}") from e

        if response.is_success:
            try:
                return model.model_validate(response.json())
            except ValueError as e:
                # Covers both undecodable JSON and bodies that fail validation
                raise BrokerResponseError(
                    f"Unexpected response from broker for {path} ({response.status_code})"
                ) from e

        detail = self._error_detail(response)
        message = detail.get("message") or response.text
        if response.status_code == 400:
            raise PolicyViolationError(message)
        if response.status_code == 404:
            raise SessionNotFoundError(message)
        if response.status_code == 409:
            raise SessionIncompleteError(detail.get("missingParts", []), message)
        if response.status_code == 502:
            raise StorageBackendError(message)
        raise BrokerUnreachableError(f"Broker returned {response.status_code} for {path}")

    @staticmethod
    def _error_detail(response: httpx.Response) -> Dict[str, Any]:
        try:
            detail = response.json().get("detail")
        except (ValueError, AttributeError):
            return {}
        if isinstance(detail, dict):
            return detail
        return {"message": str(detail)} if detail else {}

    async def authorize_single_shot(self, target: UploadTarget) -> SingleShotGrant:
        return await self._post(
            "/upload/single",
            {
                "filename": target.filename,
                "contentType": target.content_type,
                "declaredSize": target.size,
                "namespace": target.namespace,
                "category": target.category.value,
                "duration": target.duration,
            },
            SingleShotGrant,
        )

    async def open_multipart(self, target: UploadTarget, part_size: int) -> MultipartSessionGrant:
        return await self._post(
            "/upload/multipart/start",
            {
                "filename": target.filename,
                "contentType": target.content_type,
                "declaredSize": target.size,
                "duration": target.duration,
                "namespace": target.namespace,
                "category": target.category.value,
                "partSize": part_size,
            },
            MultipartSessionGrant,
        )

    async def authorize_part(self, session_id: str, part_number: int) -> PartCredential:
        return await self._post(
            "/upload/multipart/part",
            {"sessionId": session_id, "partNumber": part_number},
            PartCredential,
        )

    async def finalize(
        self, session_id: str, storage_key: str, parts: List[CompletedPart]
    ) -> FinalizeAck:
        return await self._post(
            "/upload/multipart/complete",
            {
                "sessionId": session_id,
                "storageKey": storage_key,
                "completedParts": [p.model_dump(by_alias=True) for p in parts],
            },
            FinalizeAck,
        )

    async def put_object(
        self,
        url: str,
        payload: Union[bytes, AsyncIterator[bytes]],
        size: int,
        expires_at: datetime,
        content_type: Optional[str] = None,
    ) -> str:
        """PUT bytes to a presigned URL and return the ETag.

        The write must finish before the credential expires; running out of
        time counts as an expired credential, not a broken transfer.
        """
        remaining = _seconds_left(expires_at)
        if remaining <= 0:
            raise CredentialExpiredError("Credential expired before transfer started")

        headers = {"Content-Length": str(size)}
        if content_type:
            headers["Content-Type"] = content_type

        try:
            response = await asyncio.wait_for(
                self._client.put(url, content=payload, headers=headers, timeout=self.transfer_timeout),
                timeout=remaining,
            )
        except asyncio.TimeoutError as e:
            raise CredentialExpiredError("Credential expired during transfer") from e
        except httpx.TransportError as e:
            raise TransferError(f"Transfer failed: {e}") from e

        if response.status_code == 403 and "expired" in response.text.lower():
            raise CredentialExpiredError("Storage rejected an expired credential")
        if not response.is_success:
            raise TransferError(f"Storage returned {response.status_code}")

        return response.headers.get("ETag", "").replace('"', "")


async def stream_payload(
    source: Union[bytes, Path], size: int, on_bytes: Optional[ProgressCallback] = None
) -> AsyncIterator[bytes]:
    """Yield the payload in chunks, reporting bytes handed to the transport"""
    sent = 0
    while sent < size:
        chunk = await read_range(source, sent, min(CHUNK_SIZE, size - sent))
        if not chunk:
            break
        sent += len(chunk)
        yield chunk
        if on_bytes:
            on_bytes(sent)
