import logging
import os
from uuid import uuid4

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from models.upload_models import (
    AbortRequest,
    CompleteUploadRequest,
    FinalizeAck,
    MultipartSessionGrant,
    MultipartSessionRecord,
    MultipartStartRequest,
    PartCredential,
    PartUrlRequest,
    SingleShotGrant,
    SingleShotRequest,
    SubmissionRequest,
    SubmissionResponse,
)
from services.exceptions import (
    PolicyViolationError,
    SessionIncompleteError,
    SessionNotFoundError,
    StorageBackendError,
    UploadError,
)
from services.upload_service import UploadService

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Direct Media Upload Service")

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

# Initialize services
upload_service = UploadService()


def _to_http_error(e: UploadError) -> HTTPException:
    if isinstance(e, PolicyViolationError):
        return HTTPException(status_code=400, detail={"reason": e.reason, "message": str(e)})
    if isinstance(e, SessionNotFoundError):
        return HTTPException(status_code=404, detail={"reason": e.reason, "message": str(e)})
    if isinstance(e, SessionIncompleteError):
        return HTTPException(
            status_code=409,
            detail={"reason": e.reason, "message": str(e), "missingParts": e.missing_parts},
        )
    if isinstance(e, StorageBackendError):
        return HTTPException(status_code=502, detail={"reason": e.reason, "message": "Storage service error"})
    return HTTPException(status_code=400, detail={"reason": e.reason, "message": str(e)})


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.post("/upload/single", response_model=SingleShotGrant)
async def issue_single_shot(request: SingleShotRequest):
    """Presign one PUT for a small object"""
    try:
        return await upload_service.authorize_single_shot(
            filename=request.filename,
            content_type=request.content_type,
            declared_size=request.declared_size,
            namespace=request.namespace,
            category=request.category,
            duration=request.duration,
        )
    except UploadError as e:
        raise _to_http_error(e)


@app.post("/upload/multipart/start", response_model=MultipartSessionGrant)
async def open_multipart(request: MultipartStartRequest):
    """Open a multipart upload session"""
    try:
        return await upload_service.open_multipart_session(
            filename=request.filename,
            content_type=request.content_type,
            declared_size=request.declared_size,
            duration=request.duration,
            namespace=request.namespace,
            part_size=request.part_size,
            category=request.category,
        )
    except UploadError as e:
        raise _to_http_error(e)


@app.post("/upload/multipart/part", response_model=PartCredential)
async def issue_part_url(request: PartUrlRequest):
    """Generate presigned URL for uploading a specific part"""
    try:
        return await upload_service.authorize_part(request.session_id, request.part_number)
    except UploadError as e:
        raise _to_http_error(e)


@app.post("/upload/multipart/complete", response_model=FinalizeAck)
async def finalize_multipart(request: CompleteUploadRequest):
    """Complete the multipart upload"""
    try:
        return await upload_service.finalize(
            request.session_id, request.storage_key, request.completed_parts
        )
    except UploadError as e:
        raise _to_http_error(e)


@app.post("/upload/multipart/abort")
async def abort_multipart(request: AbortRequest):
    """Abort an ongoing upload"""
    try:
        await upload_service.abort(request.session_id)
        return {"status": "aborted"}
    except UploadError as e:
        raise _to_http_error(e)


@app.get("/upload/multipart/{session_id}", response_model=MultipartSessionRecord)
async def get_session(session_id: str):
    """Get upload session details"""
    try:
        return await upload_service.get_session(session_id)
    except UploadError as e:
        raise _to_http_error(e)


@app.post("/submit", response_model=SubmissionResponse)
async def submit(request: SubmissionRequest):
    """Record a form submission (mock persistence)"""
    # TODO: persist to the submissions table once the schema lands
    submission_id = f"mock-{uuid4()}"
    logger.info(
        f"Form submitted: id={submission_id}, name={request.name!r}, "
        f"images={[a.key for a in request.images]}, videos={[a.key for a in request.videos]}"
    )
    return SubmissionResponse(id=submission_id)
