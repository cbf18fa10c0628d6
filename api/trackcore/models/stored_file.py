"""Content-addressed file metadata model."""

import uuid

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
    func,
    text,
)

from trackcore.database import Base
from trackcore.models.types import UTCDateTime


class StoredFile(Base):
    """
    One row per distinct blob content.

    Identical uploads share a row; reference_count tracks how many logical
    uploads point at it. The row and blob are removed together when the
    count reaches zero.
    """

    __tablename__ = "files"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    content_hash = Column(String(64), nullable=False)
    storage_path = Column(String(512), nullable=False)
    media_type = Column(String(128))
    size = Column(BigInteger, nullable=False, server_default=text("0"))
    original_name = Column(String(255))
    user_id = Column(Uuid(as_uuid=True))
    reference_count = Column(Integer, nullable=False, server_default=text("1"))
    created_at = Column(UTCDateTime, server_default=func.now())
    updated_at = Column(UTCDateTime, server_default=func.now())

    __table_args__ = (
        CheckConstraint("reference_count >= 0", name="ck_files_reference_count"),
        UniqueConstraint("content_hash", name="uq_files_content_hash"),
        UniqueConstraint("storage_path", name="uq_files_storage_path"),
        Index("idx_files_user_id", "user_id"),
    )
