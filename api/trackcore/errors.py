"""Error taxonomy shared by the core components and the HTTP layer."""

from typing import Any

from fastapi import status
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError


class CoreError(Exception):
    """Base class for errors carrying a stable machine-readable code."""

    code = "INTERNAL_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "An unexpected error occurred"

    def __init__(self, message: str | None = None, *, code: str | None = None, **details: Any):
        self.message = message or self.default_message
        if code:
            self.code = code
        self.details = details
        super().__init__(self.message)


class ValidationError(CoreError):
    code = "VALIDATION_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid request"


class ConflictError(CoreError):
    code = "IDEMPOTENCY_IN_PROGRESS"
    status_code = status.HTTP_409_CONFLICT
    default_message = "Request with this idempotency key is currently processing"


class QuotaExceededError(CoreError):
    code = "QUOTA_EXCEEDED"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_message = "Quota limit exceeded"


class StoredFileNotFoundError(CoreError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "File not found"


class StorageIntegrityError(CoreError):
    code = "STORAGE_INTEGRITY_ERROR"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Stored file state is inconsistent"


class TransientStorageError(CoreError):
    code = "STORAGE_UNAVAILABLE"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_message = "Storage is temporarily unavailable"


def is_transient(exc: BaseException) -> bool:
    """True for database failures that are worth retrying."""
    if isinstance(exc, (OperationalError, PoolTimeoutError)):
        return True
    return isinstance(exc, DBAPIError) and exc.connection_invalidated


def translate_db_error(exc: Exception) -> Exception:
    """Map driver-level failures onto the core taxonomy."""
    if is_transient(exc):
        return TransientStorageError(str(exc.__cause__ or exc))
    return exc


def build_error_payload(
    exc: CoreError,
    request_id: str | None = None,
    expose_message: bool = True,
) -> dict[str, Any]:
    """
    Build the structured failure body returned to clients.

    Production configurations pass expose_message=False so internal
    detail never leaves the process.
    """
    error: dict[str, Any] = {"code": exc.code, "request_id": request_id}
    if expose_message:
        error["message"] = exc.message
        if exc.details:
            error["details"] = {k: str(v) for k, v in exc.details.items()}
    return {"success": False, "error": error}
