"""Core services for Trackcore."""

from trackcore.services.dedup_store import FileDedupStore
from trackcore.services.idempotency import IdempotencyGate, IdempotentResult
from trackcore.services.quota_ledger import QuotaLedger

__all__ = ["FileDedupStore", "IdempotencyGate", "IdempotentResult", "QuotaLedger"]
