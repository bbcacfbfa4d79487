"""
Idempotency Store
=================

Exactly-once bookkeeping for operations that can be retried or redelivered:
order creation from a redelivered message, payment webhooks delivered twice,
two webhook deliveries racing each other.

Key families used by the order core:

- ``order:create:<key>``: result is the created order id
- ``order:create:<key>:lease``: held while the first attempt is running
- ``payment:confirm:<payment_id>``: a payment that was fully reconciled
- ``webhook:<provider>:<event_id>``: a provider event that was handled

Failure policy:
---------------
Reads (``is_processed``, ``get_result``) fail OPEN: if the store is
unreachable the operation is treated as not yet processed and a warning is
logged, so customers are never blocked by a cache outage. The entity-level
replay checks on Order still prevent double application.

The final ``mark_processed`` write fails LOUDLY (StoreUnavailable) because on
the payment path it is what keeps a provider's retry from being applied twice.

``mark_processed`` is a single atomic set-if-absent. Two callers racing for
the same key get exactly one True.
"""

import json
import logging
from typing import Any, Optional

from ..config import IDEMPOTENCY_STORAGE, ORDER_IDEMPOTENCY_TTL_SECONDS
from ..errors import StoreUnavailable
from .kv_store import KeyValueStore, create_kv_store

logger = logging.getLogger(__name__)


def order_create_key(idempotency_key: str) -> str:
    return f"order:create:{idempotency_key}"


def payment_confirm_key(payment_id: str) -> str:
    return f"payment:confirm:{payment_id}"


def webhook_event_key(provider: str, event_id: str) -> str:
    return f"webhook:{provider}:{event_id}"


class IdempotencyStore:
    """
    Idempotency records over a KeyValueStore.

    Args:
        kv: Backing store (memory or Redis)
        default_ttl: TTL used when ``mark_processed`` is called without one
    """

    def __init__(self, kv: KeyValueStore, default_ttl: int = ORDER_IDEMPOTENCY_TTL_SECONDS):
        self.kv = kv
        self.default_ttl = default_ttl

    def _read(self, key: str) -> Optional[dict]:
        try:
            raw = self.kv.get(key)
        except StoreUnavailable as exc:
            logger.warning("Idempotency read failed for %s, treating as unprocessed: %s", key, exc)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Corrupt idempotency record for %s: %r", key, raw)
            return None

    def is_processed(self, key: str) -> bool:
        return self._read(key) is not None

    def get_result(self, key: str) -> Optional[Any]:
        """Return the cached result for a processed key, or None."""
        record = self._read(key)
        if record is None:
            return None
        return record.get("result")

    def mark_processed(self, key: str, ttl: Optional[int] = None, result: Any = None) -> bool:
        """
        Record ``key`` as processed, atomically.

        Returns:
            True if this call created the record, False if it already existed

        Raises:
            StoreUnavailable: The store could not be written
        """
        payload = json.dumps({"result": result})
        created = self.kv.set_if_absent(key, payload, ttl or self.default_ttl)
        if not created:
            logger.debug("Idempotency key %s was already marked processed", key)
        return created

    def store_result(self, key: str, result: Any, ttl: Optional[int] = None) -> None:
        """
        Record (or overwrite) the result for ``key``.

        Only for callers that already hold a lease on the key, e.g. order
        creation. Everything else uses ``mark_processed``.

        Raises:
            StoreUnavailable: The store could not be written
        """
        self.kv.set(key, json.dumps({"result": result}), ttl or self.default_ttl)

    def claim(self, key: str, ttl: int) -> bool:
        """
        Take a short-lived lease on ``key``. True if this caller won it.

        Raises:
            StoreUnavailable: The store could not be written
        """
        return self.kv.set_if_absent(key, "1", ttl)

    def release(self, key: str) -> None:
        try:
            self.kv.delete(key)
        except StoreUnavailable as exc:
            # The lease expires on its own
            logger.warning("Could not release lease %s: %s", key, exc)


def create_idempotency_store(backend: Optional[str] = None) -> IdempotencyStore:
    """Build the store for IDEMPOTENCY_STORAGE (or ``backend``)."""
    kv = create_kv_store(backend or IDEMPOTENCY_STORAGE, namespace="idempotency")
    return IdempotencyStore(kv)
