"""Idempotency record model for safe write operation retries."""

import uuid

from sqlalchemy import (
    Column,
    Enum,
    Index,
    Integer,
    String,
    UniqueConstraint,
    Uuid,
    func,
    text,
)

from trackcore.database import Base
from trackcore.models.types import JSONType, UTCDateTime


class IdempotencyRecord(Base):
    """
    Outcome of a mutating request, keyed by (scope, key).

    A record exists only while the request is running (in_progress) or
    after it finished successfully (completed). Failed requests leave no
    record so the client can retry with the same key.
    """

    __tablename__ = "idempotency_records"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    scope = Column(String(255), nullable=False)
    key = Column(String(255), nullable=False)
    state = Column(
        Enum("in_progress", "completed", name="idempotency_state"),
        nullable=False,
        server_default=text("'in_progress'"),
    )
    # Identifies the worker holding the reservation
    reservation_token = Column(Uuid(as_uuid=True), nullable=False)
    fingerprint = Column(String(64))  # SHA256 of request body
    response_status = Column(Integer)
    response_body = Column(JSONType)
    response_headers = Column(JSONType)
    created_at = Column(UTCDateTime, nullable=False, server_default=func.now())
    completed_at = Column(UTCDateTime)
    expires_at = Column(UTCDateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("scope", "key", name="uq_idempotency_scope_key"),
        Index("idx_idempotency_expires", "expires_at"),
    )

    def __repr__(self) -> str:
        return f"<IdempotencyRecord {self.scope} {self.key} {self.state}>"
