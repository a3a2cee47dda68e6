"""Idempotency keys and the deduplication store."""

from signalgate.idempotency.keys import derive_key
from signalgate.idempotency.store import IdempotencyRecord, IdempotencyStore

__all__ = ["IdempotencyRecord", "IdempotencyStore", "derive_key"]
