"""Quota introspection router."""

from uuid import UUID

from fastapi import APIRouter, Depends

from trackcore.dependencies import get_quota_ledger, get_user_id
from trackcore.schemas.quota import QuotaDefinitionsResponse, QuotaUsageResponse
from trackcore.services.quota_ledger import QuotaLedger

router = APIRouter(prefix="/api/v1/quotas", tags=["Quotas"])


@router.get("/definitions", response_model=QuotaDefinitionsResponse)
async def list_definitions(
    ledger: QuotaLedger = Depends(get_quota_ledger),
) -> QuotaDefinitionsResponse:
    """Configured quota dimensions, for administrative tooling."""
    return QuotaDefinitionsResponse(definitions=ledger.list_quota_definitions())


@router.get("/{dimension}/usage", response_model=QuotaUsageResponse)
async def get_usage(
    dimension: str,
    user_id: UUID = Depends(get_user_id),
    ledger: QuotaLedger = Depends(get_quota_ledger),
) -> QuotaUsageResponse:
    """Current consumption of a dimension; may lag concurrent writes."""
    windows = await ledger.get_usage(user_id, dimension)
    return QuotaUsageResponse(dimension=dimension, windows=windows)
