"""Pytest configuration and shared fixtures."""

import asyncio
import hashlib
import json
import math
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock
from uuid import uuid4

import httpx
import pytest

from config import StorageSettings, UploadPolicy
from models.upload_models import AssetKind
from services.key_service import derive_storage_key
from services.session_store import SessionStore
from services.upload_service import UploadService

BROKER_URL = "http://broker.test"
STORAGE_URL = "http://storage.test"


class InMemoryRedis:
    """Just enough of the redis client API for the session store."""

    def __init__(self):
        self.data = {}
        self.ttls = {}

    def setex(self, key, ttl, value):
        self.data[key] = value.encode() if isinstance(value, str) else value
        self.ttls[key] = ttl

    def get(self, key):
        return self.data.get(key)

    def delete(self, key):
        self.data.pop(key, None)
        self.ttls.pop(key, None)


@pytest.fixture
def policy():
    return UploadPolicy()


@pytest.fixture
def storage_settings():
    return StorageSettings(bucket_name="test-bucket", aws_region="us-east-1")


@pytest.fixture
def fake_redis():
    return InMemoryRedis()


@pytest.fixture
def mock_s3():
    """boto3 S3 client double whose presigned URLs are always distinct."""
    client = MagicMock()
    client.generate_presigned_url.side_effect = (
        lambda op, Params, ExpiresIn, HttpMethod: f"https://s3.test/{Params['Key']}?op={op}&sig={uuid4().hex}"
    )
    client.create_multipart_upload.return_value = {"UploadId": "upload-123"}
    client.complete_multipart_upload.return_value = {
        "Location": "https://s3.test/key",
        "ETag": '"final-etag"',
    }
    return client


@pytest.fixture
def upload_service(policy, storage_settings, mock_s3, fake_redis):
    store = SessionStore(redis_client=fake_redis, ttl=timedelta(hours=1), settings=storage_settings)
    return UploadService(policy=policy, settings=storage_settings, s3_client=mock_s3, session_store=store)


class FakeCloud:
    """Broker endpoints and object storage behind one httpx.MockTransport.

    Records every credential request, storage write and finalize call, and
    lets tests inject storage failures per part or per file.
    """

    def __init__(self):
        self.single_shot_requests = []
        self.start_requests = []
        self.part_requests = []
        self.finalize_calls = []
        self.puts = []
        self.sessions = {}
        self.single_keys = {}
        self.objects = {}

        self.fail_parts = defaultdict(int)      # part number -> remaining 500s
        self.expire_parts = defaultdict(int)    # part number -> remaining expired 403s
        self.failing_files = set()              # filenames whose writes always fail
        self.lose_on_finalize = set()           # parts reported missing on first finalize
        self.put_delay = 0.0
        self.part_delays = {}
        self.broker_down = False

        self.in_flight = 0
        self.max_in_flight = 0

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    async def handle(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if url.startswith(BROKER_URL):
            if self.broker_down:
                raise httpx.ConnectError("connection refused", request=request)
            body = json.loads(request.content or b"{}")
            return self._broker(request.url.path, body)
        if url.startswith(STORAGE_URL) and request.method == "PUT":
            return await self._storage_put(request)
        return httpx.Response(404)

    def _broker(self, path, body):
        now = datetime.now(timezone.utc)
        if path == "/upload/single":
            self.single_shot_requests.append(body)
            key = derive_storage_key(AssetKind(body["category"]), body.get("namespace"), body["filename"], now)
            self.single_keys[key] = body["filename"]
            return httpx.Response(200, json={
                "uploadUrl": f"{STORAGE_URL}/{key}?cred={uuid4().hex}",
                "storageKey": key,
                "expiresAt": (now + timedelta(minutes=5)).isoformat(),
            })
        if path == "/upload/multipart/start":
            self.start_requests.append(body)
            session_id = uuid4().hex
            key = derive_storage_key(AssetKind(body["category"]), body.get("namespace"), body["filename"], now)
            part_count = math.ceil(body["declaredSize"] / body["partSize"])
            self.sessions[session_id] = {
                "key": key, "parts": {}, "part_count": part_count, "filename": body["filename"],
            }
            return httpx.Response(200, json={
                "storageKey": key,
                "sessionId": session_id,
                "partSize": body["partSize"],
                "partCount": part_count,
            })
        if path == "/upload/multipart/part":
            self.part_requests.append((body["sessionId"], body["partNumber"]))
            if body["sessionId"] not in self.sessions:
                return httpx.Response(404, json={"detail": {"reason": "session_not_found", "message": "unknown"}})
            cred = uuid4().hex
            return httpx.Response(200, json={
                "sessionId": body["sessionId"],
                "partNumber": body["partNumber"],
                "partUrl": f"{STORAGE_URL}/parts/{body['sessionId']}/{body['partNumber']}?cred={cred}",
                "credentialId": cred,
                "expiresAt": (now + timedelta(minutes=10)).isoformat(),
            })
        if path == "/upload/multipart/complete":
            numbers = [p["partNumber"] for p in body["completedParts"]]
            self.finalize_calls.append((body["sessionId"], numbers))
            session = self.sessions[body["sessionId"]]
            if self.lose_on_finalize:
                for n in self.lose_on_finalize:
                    session["parts"].pop(n, None)
                lost = sorted(self.lose_on_finalize)
                self.lose_on_finalize = set()
                return httpx.Response(409, json={"detail": {
                    "reason": "session_incomplete", "message": "missing", "missingParts": lost,
                }})
            expected = set(range(1, session["part_count"] + 1))
            missing = sorted(expected - set(numbers))
            if missing:
                return httpx.Response(409, json={"detail": {
                    "reason": "session_incomplete", "message": "missing", "missingParts": missing,
                }})
            self.objects[session["key"]] = b"".join(session["parts"][n] for n in sorted(session["parts"]))
            return httpx.Response(200, json={"ok": True, "storageKey": session["key"]})
        return httpx.Response(404)

    async def _storage_put(self, request):
        path = request.url.path.strip("/")
        data = request.content
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if path.startswith("parts/"):
                _, session_id, part = path.split("/")
                part_number = int(part)
                self.puts.append(("part", session_id, part_number))
                await asyncio.sleep(self.part_delays.get(part_number, self.put_delay))
                if self.sessions[session_id]["filename"] in self.failing_files:
                    return httpx.Response(500)
                if self.expire_parts[part_number] > 0:
                    self.expire_parts[part_number] -= 1
                    return httpx.Response(403, text="<Error><Code>AccessDenied</Code><Message>Request has expired</Message></Error>")
                if self.fail_parts[part_number] > 0:
                    self.fail_parts[part_number] -= 1
                    return httpx.Response(500)
                self.sessions[session_id]["parts"][part_number] = data
            else:
                self.puts.append(("single", path, None))
                await asyncio.sleep(self.put_delay)
                if self.single_keys.get(path) in self.failing_files:
                    return httpx.Response(500)
                self.objects[path] = data
            return httpx.Response(200, headers={"ETag": f'"{hashlib.md5(data).hexdigest()}"'})
        finally:
            self.in_flight -= 1


@pytest.fixture
def cloud():
    return FakeCloud()


@pytest.fixture
def small_policy():
    """Tiny sizes so multipart tests stay fast"""
    return UploadPolicy(
        image_max_bytes=64,
        video_max_bytes=4096,
        single_shot_threshold=16,
        part_size=8,
        concurrency=4,
        max_part_attempts=3,
        retry_backoff_seconds=0,
    )


@pytest.fixture
async def http_client(cloud):
    async with httpx.AsyncClient(transport=cloud.transport()) as client:
        yield client

