"""
In-memory collection cache with per-entry TTL.

Entries are keyed by ``"<collection>"`` or ``"<collection>:<qualifier>"``.
Every write bumps a store-wide version counter so that callers holding a
snapshot can detect that somebody else wrote the key in the meantime.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = int(os.getenv("CLINIC_SYNC_CACHE_TTL_SECONDS", "300"))  # 5 minutes
MAX_CACHE_SIZE = 100

COLLECTION_TTL_SECONDS: dict[str, int] = {
    "customers": 10 * 60,
    "appointments": 2 * 60,
    "services": 30 * 60,
    "staff": 60 * 60,
    "invoices": 15 * 60,
    "medicalRecords": 30 * 60,
}


class CacheConflictError(RuntimeError):
    """Raised when a conditional write finds a newer version than expected."""

    def __init__(self, key: str, expected: int, actual: int):
        super().__init__(
            f"cache key '{key}' changed since snapshot (expected v{expected}, found v{actual})"
        )
        self.key = key
        self.expected = expected
        self.actual = actual


@dataclass
class CacheEntry:
    """A cached value with its absolute expiration."""

    value: Any
    expires_at: float
    created_at: float
    version: int

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


class CacheStore:
    """
    Key -> entry map shared by every fetcher and mutation of one client.

    Constructed explicitly and passed around; there is no module-level
    instance.
    """

    def __init__(
        self,
        default_ttl: float = DEFAULT_TTL_SECONDS,
        max_size: int = MAX_CACHE_SIZE,
        collection_ttls: dict[str, int] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._entries: dict[str, CacheEntry] = {}
        self._default_ttl = default_ttl
        self._max_size = max_size
        self._collection_ttls = dict(COLLECTION_TTL_SECONDS if collection_ttls is None else collection_ttls)
        self._clock = clock
        self._lock = threading.RLock()
        self._version_counter = 0
        self._hits = 0
        self._misses = 0

    def _ttl_for(self, key: str) -> float:
        collection = key.split(":", 1)[0]
        return self._collection_ttls.get(collection, self._default_ttl)

    def get(self, key: str, allow_stale: bool = False) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                logger.debug("Cache MISS: %s", key)
                return None

            if entry.is_expired(self._clock()):
                if allow_stale:
                    logger.debug("Cache STALE read: %s", key)
                    return entry.value
                del self._entries[key]
                self._misses += 1
                logger.debug("Cache EXPIRED: %s", key)
                return None

            self._hits += 1
            logger.debug("Cache HIT: %s", key)
            return entry.value

    def version(self, key: str) -> int:
        """Version of the live entry under ``key``; 0 when absent."""
        with self._lock:
            entry = self._entries.get(key)
            return entry.version if entry is not None else 0

    def set(self, key: str, value: Any, ttl: float | None = None) -> int:
        with self._lock:
            if len(self._entries) >= self._max_size and key not in self._entries:
                self.cleanup()

            effective_ttl = ttl if ttl is not None else self._ttl_for(key)
            now = self._clock()
            self._version_counter += 1
            self._entries[key] = CacheEntry(
                value=value,
                expires_at=now + effective_ttl,
                created_at=now,
                version=self._version_counter,
            )
            logger.debug("Cache SET: %s (ttl=%ss, v%d)", key, effective_ttl, self._version_counter)
            return self._version_counter

    def compare_and_set(
        self,
        key: str,
        value: Any,
        expected_version: int,
        ttl: float | None = None,
    ) -> int:
        """Write ``value`` only if the entry is still at ``expected_version``."""
        with self._lock:
            actual = self.version(key)
            if actual != expected_version:
                raise CacheConflictError(key, expected_version, actual)
            return self.set(key, value, ttl)

    def invalidate(self, key: str) -> bool:
        with self._lock:
            removed = self._entries.pop(key, None) is not None
        if removed:
            logger.debug("Cache INVALIDATED: %s", key)
        return removed

    def invalidate_pattern(self, prefix: str) -> int:
        """Remove every key starting with ``prefix``; other keys are untouched."""
        with self._lock:
            doomed = [key for key in self._entries if key.startswith(prefix)]
            for key in doomed:
                del self._entries[key]
        for key in doomed:
            logger.debug("Cache INVALIDATED (pattern %s): %s", prefix, key)
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        logger.info("Cache CLEARED")

    def cleanup(self) -> int:
        """Drop expired entries, returning how many were removed."""
        with self._lock:
            now = self._clock()
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("Cache CLEANUP: removed %d expired entries", len(expired))
        return len(expired)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            now = self._clock()
            lookups = self._hits + self._misses
            return {
                "size": len(self._entries),
                "maxSize": self._max_size,
                "hits": self._hits,
                "misses": self._misses,
                "hitRate": (self._hits / lookups) if lookups else 0.0,
                "entries": [
                    {
                        "key": key,
                        "age": now - entry.created_at,
                        "ttl": entry.expires_at - entry.created_at,
                        "version": entry.version,
                    }
                    for key, entry in self._entries.items()
                ],
            }


def _encode(value: str) -> str:
    return base64.urlsafe_b64encode(value.encode("utf-8")).decode("ascii")


def collection_key(collection: str) -> str:
    return collection


def item_key(collection: str, record_id: str) -> str:
    return f"{collection}:item:{record_id}"


def search_key(collection: str, query: str) -> str:
    return f"{collection}:search:{_encode(query)}"


def filtered_key(collection: str, filters: dict[str, Any]) -> str:
    return f"{collection}:filtered:{_encode(json.dumps(filters, sort_keys=True))}"


def today_appointments_key(date: str) -> str:
    return f"appointments:today:{date}"


def customer_appointments_key(customer_id: str) -> str:
    return f"appointments:customer:{customer_id}"


def customer_invoices_key(customer_id: str) -> str:
    return f"invoices:customer:{customer_id}"
