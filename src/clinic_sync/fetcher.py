"""
Cache-first collection reads with stale fallback and background refresh.
"""

from __future__ import annotations

import enum
import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .backend import CollectionStore
from .cache_store import CacheStore, collection_key
from .models import APPOINTMENTS, CUSTOMERS, INVOICES, SERVICES, STAFF, Record
from .signals import PeriodicTask, SignalHub, Trigger

logger = logging.getLogger(__name__)

STALE_TIME_SECONDS = float(os.getenv("CLINIC_SYNC_STALE_SECONDS", "30"))

# Appointments move fastest, staff slowest.
COLLECTION_REFETCH_INTERVALS: dict[str, float] = {
    CUSTOMERS: 2 * 60,
    APPOINTMENTS: 1 * 60,
    SERVICES: 10 * 60,
    INVOICES: 5 * 60,
    STAFF: 30 * 60,
}


class FetchState(enum.Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


@dataclass
class FetchResult:
    """What a reader sees after a fetch settles."""

    collection: str
    data: list[Record] = field(default_factory=list)
    state: FetchState = FetchState.IDLE
    error: Exception | None = None
    is_stale: bool = True
    from_cache: bool = False


class CollectionFetcher:
    """
    Reads one collection through the shared cache.

    A fetch never raises: failures move the fetcher to ERROR and surface the
    most recent data still around (stale cache entry, then last good result,
    then an empty list).
    """

    def __init__(
        self,
        collection: str,
        store: CollectionStore,
        cache: CacheStore,
        *,
        enabled: bool = True,
        refetch_on_focus: bool = True,
        refetch_interval: float | None = None,
        stale_time: float = STALE_TIME_SECONDS,
        signals: SignalHub | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.collection = collection
        self.cache_key = collection_key(collection)
        self._store = store
        self._cache = cache
        self._enabled = enabled
        self._refetch_on_focus = refetch_on_focus
        self._refetch_interval = refetch_interval
        self._stale_time = stale_time
        self._signals = signals
        self._clock = clock

        self._data: list[Record] = []
        self._state = FetchState.IDLE
        self._error: Exception | None = None
        self._last_fetch_at = 0.0
        self._network_fetches = 0
        self._periodic: PeriodicTask | None = None
        self._unsubscribe_focus: Callable[[], None] | None = None

    @property
    def state(self) -> FetchState:
        return self._state

    @property
    def error(self) -> Exception | None:
        return self._error

    @property
    def is_loading(self) -> bool:
        return self._state is FetchState.LOADING

    @property
    def is_error(self) -> bool:
        return self._state is FetchState.ERROR

    @property
    def last_fetch_at(self) -> float:
        return self._last_fetch_at

    @property
    def is_stale(self) -> bool:
        return self._clock() - self._last_fetch_at > self._stale_time

    @property
    def data(self) -> list[Record]:
        """Current view: the cached array when present, else the last result."""
        cached = self._cache.get(self.cache_key, allow_stale=True)
        if cached is not None:
            return cached
        return self._data

    def result(self, from_cache: bool = False) -> FetchResult:
        return FetchResult(
            collection=self.collection,
            data=self.data,
            state=self._state,
            error=self._error,
            is_stale=self.is_stale,
            from_cache=from_cache,
        )

    async def fetch(self, force: bool = False) -> FetchResult:
        if not self._enabled:
            return self.result()

        self._error = None
        if not force:
            cached = self._cache.get(self.cache_key)
            if cached is not None:
                self._data = cached
                self._state = FetchState.READY
                self._last_fetch_at = self._clock()
                return self.result(from_cache=True)

        self._state = FetchState.LOADING
        logger.info("Fetching fresh data for %s", self.collection)
        try:
            self._network_fetches += 1
            fresh = await self._store.get(self.collection)
        except Exception as exc:
            self._state = FetchState.ERROR
            self._error = exc
            logger.warning("Error fetching %s: %s", self.collection, exc)
            stale = self._cache.get(self.cache_key, allow_stale=True)
            if stale is not None:
                logger.warning("Using stale cache data for %s", self.collection)
                self._data = stale
            return self.result()

        self._cache.set(self.cache_key, fresh)
        self._data = fresh
        self._state = FetchState.READY
        self._last_fetch_at = self._clock()
        logger.info("Fresh data loaded for %s: %d items", self.collection, len(fresh))
        return self.result()

    async def refetch(self) -> FetchResult:
        return await self.fetch(force=True)

    async def on_focus(self) -> bool:
        """Refetch after focus is regained, but only once the data went stale."""
        if not self._enabled or not self._refetch_on_focus:
            return False
        if not self.is_stale:
            return False
        await self.fetch()
        return True

    async def start(self) -> FetchResult:
        """Initial fetch plus interval and focus triggers."""
        result = await self.fetch()
        if not self._enabled:
            return result
        if self._refetch_interval and self._periodic is None:
            self._periodic = PeriodicTask(
                f"refetch-{self.collection}", self._refetch_interval, self.fetch
            )
            self._periodic.start()
        if self._refetch_on_focus and self._signals is not None and self._unsubscribe_focus is None:
            self._unsubscribe_focus = self._signals.subscribe(
                Trigger.FOCUS_REGAINED, self.on_focus
            )
        return result

    async def stop(self) -> None:
        if self._periodic is not None:
            await self._periodic.stop()
            self._periodic = None
        if self._unsubscribe_focus is not None:
            self._unsubscribe_focus()
            self._unsubscribe_focus = None

    def get_health(self) -> dict[str, Any]:
        return {
            "collection": self.collection,
            "state": self._state.value,
            "lastError": f"{self._error.__class__.__name__}: {self._error}" if self._error else None,
            "lastFetchAt": self._last_fetch_at,
            "isStale": self.is_stale,
            "staleTimeSeconds": self._stale_time,
            "refetchIntervalSeconds": self._refetch_interval,
            "networkFetches": self._network_fetches,
            "periodicRunning": self._periodic is not None and self._periodic.running,
        }
