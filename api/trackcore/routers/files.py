"""Files router: deduplicated uploads gated by idempotency and quota."""

from uuid import UUID

from fastapi import APIRouter, Depends, File, Header, Query, Request, UploadFile, status
from fastapi.responses import JSONResponse

from trackcore.config import settings
from trackcore.dependencies import get_file_store, get_idempotency_gate, get_quota_ledger, get_user_id
from trackcore.errors import ValidationError
from trackcore.middleware.rate_limit import limiter
from trackcore.schemas.files import FileMetadata, StoredFileRef
from trackcore.services.dedup_store import FileDedupStore
from trackcore.services.idempotency import IdempotencyGate, IdempotentResult
from trackcore.services.quota_ledger import QuotaLedger

router = APIRouter(prefix="/api/v1/files", tags=["Files"])

UPLOAD_SCOPE = "POST /api/v1/files"
DELETE_SCOPE = "DELETE /api/v1/files"
UPLOAD_QUOTA = "uploads"


async def _read_upload(file: UploadFile, max_bytes: int) -> bytes:
    """Read at most one byte past the limit so oversized uploads are never buffered whole."""
    if file.size is not None and file.size > max_bytes:
        raise ValidationError(
            f"File exceeds maximum size of {max_bytes} bytes",
            code="FILE_TOO_LARGE",
        )
    return await file.read(max_bytes + 1)


def _to_response(result: IdempotentResult) -> JSONResponse:
    headers = dict(result.headers)
    if result.replayed:
        headers["Idempotent-Replayed"] = "true"
    return JSONResponse(status_code=result.status_code, content=result.body, headers=headers)


# --- Upload ---


@router.post("", status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.upload_rate_limit)
async def upload_file(
    request: Request,
    file: UploadFile = File(...),
    user_id: UUID = Depends(get_user_id),
    x_request_id: str | None = Header(default=None, alias="X-Request-ID"),
    store: FileDedupStore = Depends(get_file_store),
    ledger: QuotaLedger = Depends(get_quota_ledger),
    gate: IdempotencyGate = Depends(get_idempotency_gate),
) -> JSONResponse:
    """
    Upload a file.

    Requires X-Request-ID. Retrying with the same id returns the original
    response without storing or charging quota again. Invalid content is
    rejected before quota is charged, and a failed store refunds it.
    """
    content = await _read_upload(file, store.config.max_upload_bytes)
    store.validate(content)

    async def handler() -> IdempotentResult:
        charge = await ledger.require(user_id, UPLOAD_QUOTA)
        try:
            ref = await store.store(
                content,
                FileMetadata(
                    media_type=file.content_type,
                    original_name=file.filename,
                    user_id=user_id,
                ),
            )
        except Exception:
            await ledger.refund(charge)
            raise
        return IdempotentResult(
            status_code=status.HTTP_201_CREATED,
            body={"success": True, "file": ref.model_dump()},
        )

    result = await gate.execute(
        UPLOAD_SCOPE,
        x_request_id,
        handler,
        fingerprint=gate.hash_request_body(content),
        owner=str(user_id),
    )
    return _to_response(result)


# --- Read ---


@router.get("", response_model=list[StoredFileRef])
async def list_files(
    user_id: UUID = Depends(get_user_id),
    store: FileDedupStore = Depends(get_file_store),
) -> list[StoredFileRef]:
    """List files first uploaded by the caller."""
    return await store.list_for_user(user_id)


@router.get("/{file_id}", response_model=StoredFileRef)
async def get_file(
    file_id: UUID,
    user_id: UUID = Depends(get_user_id),  # noqa: ARG001
    store: FileDedupStore = Depends(get_file_store),
) -> StoredFileRef:
    return await store.get(file_id)



@router.get("/{file_id}/download-url")
async def get_download_url(
    file_id: UUID,
    expires_in: int = Query(default=3600, ge=60, le=7 * 24 * 3600),
    user_id: UUID = Depends(get_user_id),  # noqa: ARG001
    store: FileDedupStore = Depends(get_file_store),
) -> dict:
    """Time-limited download link; presigned on S3-compatible backends."""
    url = await store.download_url(file_id, expires_in)
    return {"id": str(file_id), "url": url, "expires_in": expires_in}

# --- Release ---


@router.delete("/{file_id}")
async def delete_file(
    file_id: UUID,
    user_id: UUID = Depends(get_user_id),
    x_request_id: str | None = Header(default=None, alias="X-Request-ID"),
    store: FileDedupStore = Depends(get_file_store),
    gate: IdempotencyGate = Depends(get_idempotency_gate),
) -> JSONResponse:
    """Release one reference; the blob goes away with the last one."""

    async def handler() -> IdempotentResult:
        released = await store.release(file_id)
        return IdempotentResult(
            status_code=status.HTTP_200_OK,
            body={"success": True, **released.model_dump()},
        )

    result = await gate.execute(
        f"{DELETE_SCOPE}/{file_id}",
        x_request_id,
        handler,
        owner=str(user_id),
    )
    return _to_response(result)
