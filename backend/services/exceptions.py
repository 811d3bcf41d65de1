# services/exceptions.py
from typing import Iterable, List


class UploadError(Exception):
    """Base class for upload failures, tagged with a reason code"""
    reason = "upload_error"
    retriable = False


class PolicyViolationError(UploadError):
    """Declared size, type or duration breaks the upload policy"""
    reason = "policy_violation"


class CredentialExpiredError(UploadError):
    """A presigned URL expired before its transfer completed"""
    reason = "credential_expired"
    retriable = True


class TransferError(UploadError):
    """Network or storage error while writing bytes"""
    reason = "transfer_failure"
    retriable = True


class SessionIncompleteError(UploadError):
    """Finalize was rejected because some parts are missing"""
    reason = "session_incomplete"
    retriable = True

    def __init__(self, missing_parts: Iterable[int], message: str = ""):
        self.missing_parts: List[int] = sorted(set(missing_parts))
        super().__init__(message or f"Missing parts: {self.missing_parts}")


class SessionNotFoundError(UploadError):
    """Unknown or expired multipart session"""
    reason = "session_not_found"


class BrokerUnreachableError(UploadError):
    """The credential broker could not be reached"""
    reason = "broker_unreachable"


class BrokerResponseError(UploadError):
    """The broker answered with a body that is not the expected response"""
    reason = "broker_error"


class StorageBackendError(UploadError):
    """The storage service rejected a session operation"""
    reason = "storage_error"


class UploadCancelledError(UploadError):
    reason = "cancelled"
