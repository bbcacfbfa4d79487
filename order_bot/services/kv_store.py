"""
Key-Value Store abstraction
===========================

Cart sessions, idempotency records and the active-conversation tracker all
need the same handful of primitives over short-lived string values:

- get / set with a TTL
- atomic "set if absent" (claims; never a separate check-then-set)
- atomic read-modify-write of one key (``update``)

Two interchangeable implementations sit behind ``KeyValueStore``:

1. **InMemoryKeyValueStore**: a dict guarded by a threading.Lock. Values are
   lost on restart and not shared between workers. Fine for single-instance
   deployments and tests.

2. **RedisKeyValueStore**: shared between instances. ``set_if_absent`` is
   ``SET NX EX`` and ``update`` is an optimistic WATCH/MULTI transaction, so
   both stay atomic across processes. Transient Redis errors are retried with
   tenacity; persistent failures surface as StoreUnavailable.

Callers never know which backend is active; ``create_kv_store`` picks one from
configuration.

Expiry:
-------
TTLs are advisory cleanup, not a correctness mechanism. The in-memory store
expires lazily on access and sweeps the whole map on roughly 1% of writes.
"""

import logging
import random
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Callable, Dict, Optional, Tuple

import redis
from redis.exceptions import RedisError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..config import REDIS_URL
from ..errors import StoreUnavailable

logger = logging.getLogger(__name__)

Updater = Callable[[str], Optional[str]]


class KeyValueStore(ABC):
    """Minimal TTL key-value interface shared by both backends."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the value or None if absent/expired."""

    @abstractmethod
    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Store a value, replacing any existing one."""

    @abstractmethod
    def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        """Atomically store a value only if the key is absent. True if stored."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove a key; missing keys are ignored."""

    @abstractmethod
    def update(self, key: str, updater: Updater, ttl_seconds: int) -> Optional[str]:
        """
        Atomically replace the value of an existing key.

        ``updater`` receives the current value and returns the new one, or
        None to delete the key. Missing keys are left missing and the updater
        is not called. Exceptions raised by ``updater`` abort the update and
        propagate unchanged.

        Returns:
            The new value, or None if the key did not exist or was deleted
        """


# =============================================================================
# In-memory implementation
# =============================================================================

class InMemoryKeyValueStore(KeyValueStore):
    """Process-local store. ``clock`` is injectable so tests can move time."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._data: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _live_value(self, key: str) -> Optional[str]:
        # Caller holds the lock
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    def _maybe_cleanup(self) -> None:
        if random.randint(1, 100) == 1:
            self.cleanup_expired()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live_value(key)

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._maybe_cleanup()
        with self._lock:
            self._data[key] = (value, self._clock() + ttl_seconds)

    def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        self._maybe_cleanup()
        with self._lock:
            if self._live_value(key) is not None:
                return False
            self._data[key] = (value, self._clock() + ttl_seconds)
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def update(self, key: str, updater: Updater, ttl_seconds: int) -> Optional[str]:
        with self._lock:
            current = self._live_value(key)
            if current is None:
                return None
            new_value = updater(current)
            if new_value is None:
                del self._data[key]
                return None
            self._data[key] = (new_value, self._clock() + ttl_seconds)
            return new_value

    def cleanup_expired(self) -> int:
        """
        Remove every expired entry.

        Returns:
            int: Number of entries removed
        """
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, expires_at) in self._data.items() if now >= expires_at]
            for key in expired:
                del self._data[key]

        if expired:
            logger.debug("Cleaned up %d expired keys from memory store", len(expired))
        return len(expired)

    def clear(self) -> int:
        with self._lock:
            count = len(self._data)
            self._data.clear()
            return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


# =============================================================================
# Redis implementation
# =============================================================================

def redis_retry():
    return retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
        retry=retry_if_exception_type(RedisError),
    )


class RedisKeyValueStore(KeyValueStore):
    """
    Redis-backed store shared by all instances.

    Args:
        client: Optional pre-built redis client (tests pass a mock)
        url: Redis URL used when no client is given
        namespace: Prefix for every key, e.g. "cart" -> "cart:<key>"
    """

    def __init__(self, client: Optional[redis.Redis] = None, url: Optional[str] = None, namespace: str = ""):
        self.redis = client or redis.Redis.from_url(
            url or REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=1,
        )
        self.namespace = namespace

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}" if self.namespace else key

    @contextmanager
    def _unavailable_on_error(self, operation: str, key: str):
        try:
            yield
        except RedisError as exc:
            logger.error("Redis %s failed for %s: %s", operation, key, exc)
            raise StoreUnavailable(f"Redis {operation} failed for {key}") from exc

    @redis_retry()
    def _get(self, key: str) -> Optional[str]:
        return self.redis.get(self._key(key))

    @redis_retry()
    def _set(self, key: str, value: str, ttl_seconds: int, nx: bool = False):
        return self.redis.set(self._key(key), value, ex=ttl_seconds, nx=nx)

    @redis_retry()
    def _delete(self, key: str) -> None:
        self.redis.delete(self._key(key))

    @redis_retry()
    def _update(self, key: str, updater: Updater, ttl_seconds: int) -> Optional[str]:
        full_key = self._key(key)

        def _transaction(pipe):
            current = pipe.get(full_key)
            if current is None:
                return None
            new_value = updater(current)
            pipe.multi()
            if new_value is None:
                pipe.delete(full_key)
            else:
                pipe.set(full_key, new_value, ex=ttl_seconds)
            return new_value

        # transaction() re-runs _transaction if the watched key changes under us
        return self.redis.transaction(_transaction, full_key, value_from_callable=True)

    def get(self, key: str) -> Optional[str]:
        with self._unavailable_on_error("GET", key):
            return self._get(key)

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._unavailable_on_error("SET", key):
            self._set(key, value, ttl_seconds)

    def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        with self._unavailable_on_error("SET NX", key):
            return bool(self._set(key, value, ttl_seconds, nx=True))

    def delete(self, key: str) -> None:
        with self._unavailable_on_error("DEL", key):
            self._delete(key)

    def update(self, key: str, updater: Updater, ttl_seconds: int) -> Optional[str]:
        with self._unavailable_on_error("WATCH/MULTI", key):
            return self._update(key, updater, ttl_seconds)


# =============================================================================
# Factory
# =============================================================================

def create_kv_store(backend: str, namespace: str, redis_url: Optional[str] = None) -> KeyValueStore:
    """
    Build a store for the configured backend.

    Args:
        backend: "memory" or "redis"
        namespace: Key prefix used by the Redis backend
        redis_url: Overrides REDIS_URL

    Unknown backends fall back to memory with a warning.
    """
    backend = (backend or "memory").lower()
    if backend == "redis":
        logger.info("Using Redis key-value store for %s", namespace)
        return RedisKeyValueStore(url=redis_url, namespace=namespace)
    if backend != "memory":
        logger.warning("Unknown storage backend %r for %s; falling back to memory", backend, namespace)
    else:
        logger.info("Using in-memory key-value store for %s", namespace)
    return InMemoryKeyValueStore()
