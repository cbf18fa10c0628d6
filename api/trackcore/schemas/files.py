"""File-related Pydantic schemas."""

from uuid import UUID

from pydantic import BaseModel


class FileMetadata(BaseModel):
    """Caller-supplied description of an upload."""

    media_type: str | None = None
    original_name: str | None = None
    user_id: UUID | None = None


class StoredFileRef(BaseModel):
    """Reference to a stored blob as returned by the file store."""

    id: str
    content_hash: str
    storage_path: str
    url: str
    media_type: str | None
    size: int
    original_name: str | None
    reference_count: int
    # True when the upload matched existing content
    deduplicated: bool = False


class ReleaseFileResponse(BaseModel):
    """Response after releasing a file reference."""

    id: str
    reference_count: int
    deleted: bool
