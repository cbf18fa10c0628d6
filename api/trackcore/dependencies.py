"""FastAPI dependencies wiring the core components."""

from functools import lru_cache
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trackcore.config import settings
from trackcore.database import get_session_factory
from trackcore.services.blob_storage import BlobStorage, build_blob_storage
from trackcore.services.dedup_store import FileDedupStore
from trackcore.services.idempotency import IdempotencyGate
from trackcore.services.quota_ledger import QuotaLedger


@lru_cache
def get_blob_storage() -> BlobStorage:
    """Get the configured blob backend (created once per process)."""
    return build_blob_storage(settings)


def get_file_store(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    blobs: BlobStorage = Depends(get_blob_storage),
) -> FileDedupStore:
    return FileDedupStore(session_factory, blobs, settings.file_store_config())


def get_quota_ledger(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> QuotaLedger:
    return QuotaLedger(session_factory, settings.quota_config())


def get_idempotency_gate(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> IdempotencyGate:
    return IdempotencyGate(session_factory, settings.idempotency_config())


async def get_user_id(
    x_user_id: str | None = Header(default=None, alias="X-User-ID"),
) -> UUID:
    """
    Identity of the caller, as established by the upstream auth layer.

    Raises:
        HTTPException: 401 if the header is missing or not a UUID
    """
    if x_user_id:
        try:
            return UUID(x_user_id)
        except ValueError:
            pass  # Malformed id, treat as missing

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={
            "error": {
                "code": "UNAUTHORIZED",
                "message": "Authenticated user required",
            }
        },
    )
