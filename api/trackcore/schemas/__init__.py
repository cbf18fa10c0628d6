"""Pydantic schemas for request/response validation."""

from trackcore.schemas.files import FileMetadata, ReleaseFileResponse, StoredFileRef
from trackcore.schemas.quota import QuotaDefinitionsResponse, QuotaUsageResponse, WindowUsage

__all__ = [
    "FileMetadata",
    "StoredFileRef",
    "ReleaseFileResponse",
    "QuotaDefinitionsResponse",
    "QuotaUsageResponse",
    "WindowUsage",
]
