"""Database models owned by the trackcore components."""

from trackcore.models.idempotency import IdempotencyRecord
from trackcore.models.quota import QuotaCounter
from trackcore.models.stored_file import StoredFile

__all__ = [
    "StoredFile",
    "IdempotencyRecord",
    "QuotaCounter",
]
