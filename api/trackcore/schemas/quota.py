"""Quota-related Pydantic schemas."""

from pydantic import BaseModel


class QuotaDefinitionsResponse(BaseModel):
    """Configured quota dimensions in evaluation order."""

    definitions: list[str]


class WindowUsage(BaseModel):
    window: str
    window_key: str
    consumed: int
    limit: int
    remaining: int


class QuotaUsageResponse(BaseModel):
    """Current usage of a dimension for the calling user."""

    dimension: str
    windows: list[WindowUsage]
