"""Quota counter model for per-user windowed limits."""

from sqlalchemy import (
    CheckConstraint,
    Column,
    Index,
    Integer,
    String,
    Uuid,
    func,
    text,
)

from trackcore.database import Base
from trackcore.models.types import UTCDateTime


class QuotaCounter(Base):
    """
    Consumption within one window of one quota dimension.

    The window_key (e.g. "2026-10-17" or a truncated timestamp) is part of
    the primary key, so a new window starts a fresh row at zero.
    """

    __tablename__ = "quota_counters"

    user_id = Column(Uuid(as_uuid=True), primary_key=True)
    dimension = Column(String(64), primary_key=True)
    window_key = Column(String(64), primary_key=True)
    window_name = Column(String(64), nullable=False)
    consumed = Column(Integer, nullable=False, server_default=text("0"))
    limit = Column(Integer, nullable=False)
    window_ends_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, server_default=func.now())

    __table_args__ = (
        CheckConstraint("consumed >= 0", name="ck_quota_consumed"),
        Index("idx_quota_window_ends", "window_ends_at"),
    )
