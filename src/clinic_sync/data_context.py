"""
Composition root for one client: shared cache, per-collection fetchers,
optimistic mutation wrappers, cached derived views, staff session and
its monitor.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import Callable
from datetime import date
from typing import Any

from .auth import AuthSession
from .auth_monitor import AuthMonitor
from .backend import CollectionStore, InMemoryCollectionStore, DEMO_DATA
from .cache_store import (
    CacheStore,
    customer_appointments_key,
    customer_invoices_key,
    filtered_key,
    item_key,
    search_key,
    today_appointments_key,
)
from .fetcher import COLLECTION_REFETCH_INTERVALS, CollectionFetcher, FetchResult, FetchState
from .models import (
    APPOINTMENTS,
    CUSTOMERS,
    INVOICES,
    SERVICES,
    STAFF,
    Record,
    find_by_id,
    new_record_id,
    normalize_collection,
)
from .notifications import Notification, Notifier
from .optimistic import OptimisticMutations
from .session_storage import FileSessionStorage, MemorySessionStorage, StorageChange
from .signals import PeriodicTask, SignalHub, Trigger

logger = logging.getLogger(__name__)

STORAGE_POLL_INTERVAL_SECONDS = float(os.getenv("CLINIC_SYNC_STORAGE_POLL_SECONDS", "2"))

PRELOADED_COLLECTIONS = (CUSTOMERS, APPOINTMENTS, SERVICES, INVOICES, STAFF)

_ACTION_LABELS = {"add": "thêm", "update": "cập nhật", "delete": "xóa"}

# Cross-collection views dropped after a confirmed write, per collection and action.
INVALIDATION_PATTERNS: dict[tuple[str, str], tuple[str, ...]] = {
    (CUSTOMERS, "update"): ("appointments:customer", "invoices:customer"),
    (CUSTOMERS, "delete"): ("appointments:customer", "invoices:customer"),
    (APPOINTMENTS, "add"): ("appointments:today", "appointments:customer"),
    (APPOINTMENTS, "update"): ("appointments:today", "appointments:customer"),
    (APPOINTMENTS, "delete"): ("appointments:today", "appointments:customer"),
    (INVOICES, "add"): ("invoices:customer",),
    (INVOICES, "update"): ("invoices:customer",),
    (INVOICES, "delete"): ("invoices:customer",),
}


def invalidation_patterns(collection: str, action: str) -> tuple[str, ...]:
    """Prefixes dropped after a confirmed ``action`` on ``collection``."""
    own = [f"{collection}:search:", f"{collection}:filtered:"]
    if action != "add":
        own.append(f"{collection}:item:")
    return (*own, *INVALIDATION_PATTERNS.get((collection, action), ()))


def _matches_query(record: Record, query: str) -> bool:
    needle = query.casefold()
    return any(isinstance(value, str) and needle in value.casefold() for value in record.values())


def build_store(backend: str | None = None) -> CollectionStore:
    """Store selected by ``CLINIC_SYNC_BACKEND`` (``memory`` or ``sheets``)."""
    choice = (backend or os.getenv("CLINIC_SYNC_BACKEND", "memory")).lower()
    if choice == "sheets":
        from .remote_store import SheetsApiStore

        return SheetsApiStore()
    if choice != "memory":
        raise ValueError("CLINIC_SYNC_BACKEND must be one of: memory, sheets")
    return InMemoryCollectionStore(seed=DEMO_DATA)


class ClinicData:
    """Everything one client process needs to read and write clinic data."""

    def __init__(
        self,
        store: CollectionStore,
        *,
        cache: CacheStore | None = None,
        storage: MemorySessionStorage | FileSessionStorage | None = None,
        notifier: Notifier | None = None,
        signals: SignalHub | None = None,
        clock: Callable[[], float] = time.time,
        storage_poll_seconds: float = STORAGE_POLL_INTERVAL_SECONDS,
    ):
        self.store = store
        self.cache = cache or CacheStore(clock=clock)
        self.storage = storage if storage is not None else MemorySessionStorage()
        self.notifier = notifier or Notifier()
        self.signals = signals or SignalHub()
        self._clock = clock
        self._storage_poll_seconds = storage_poll_seconds

        self._fetchers: dict[str, CollectionFetcher] = {}
        self._mutations: dict[str, OptimisticMutations] = {}
        for collection in PRELOADED_COLLECTIONS:
            self.fetcher(collection)

        self.session = AuthSession(store, self.storage, self.notifier, clock=clock)
        self.monitor = AuthMonitor(self.session, store, signals=self.signals)

        self._storage_poll: PeriodicTask | None = None
        self._unsubscribe_storage: Callable[[], None] | None = None
        self._started = False

    def fetcher(self, collection: str) -> CollectionFetcher:
        name = normalize_collection(collection)
        if name not in self._fetchers:
            self._fetchers[name] = CollectionFetcher(
                name,
                self.store,
                self.cache,
                refetch_interval=COLLECTION_REFETCH_INTERVALS.get(name),
                signals=self.signals,
                clock=self._clock,
            )
        return self._fetchers[name]

    def mutations(self, collection: str) -> OptimisticMutations:
        name = normalize_collection(collection)
        if name not in self._mutations:
            self._mutations[name] = OptimisticMutations(name, self.cache)
        return self._mutations[name]

    def _report_failure(self, action: str, collection: str) -> Callable[[Exception, Record], None]:
        def _on_error(exc: Exception, record: Record) -> None:
            self.notifier.notify(
                Notification(
                    title="Lỗi",
                    description=f"Không thể {_ACTION_LABELS[action]} {collection} '{record.get('id')}': {exc}",
                    variant="destructive",
                    cause=f"{collection}_{action}_failed",
                )
            )

        return _on_error

    async def list_records(self, collection: str, force: bool = False) -> FetchResult:
        fetcher = self.fetcher(collection)
        result = await fetcher.fetch(force=force)
        if result.state is FetchState.ERROR:
            self.notifier.notify(
                Notification(
                    title="Không thể tải dữ liệu",
                    description=f"{fetcher.collection}: {result.error}",
                    variant="destructive",
                    cause=f"{fetcher.collection}_fetch_failed",
                )
            )
        return result

    async def _build_view(self, key: str, collection: str, select: Callable[[list[Record]], Any]) -> Any:
        result = await self.list_records(collection)
        value = select(result.data)
        # Views over fallback data are served but not cached.
        if result.state is FetchState.READY and value is not None:
            self.cache.set(key, value)
        return value

    async def _view(self, key: str, collection: str, select: Callable[[list[Record]], Any]) -> Any:
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        return await self._build_view(key, collection, select)

    async def get_record(self, collection: str, record_id: str) -> Record | None:
        name = normalize_collection(collection)
        return await self._view(
            item_key(name, record_id), name, lambda records: find_by_id(records, record_id)
        )

    async def search_records(self, collection: str, query: str) -> list[Record]:
        """Records with ``query`` in any text field, ignoring case."""
        name = normalize_collection(collection)
        return await self._view(
            search_key(name, query),
            name,
            lambda records: [record for record in records if _matches_query(record, query)],
        )

    async def filter_records(self, collection: str, filters: dict[str, Any]) -> list[Record]:
        """Records whose fields equal every value in ``filters``."""
        name = normalize_collection(collection)
        return await self._view(
            filtered_key(name, filters),
            name,
            lambda records: [
                record
                for record in records
                if all(record.get(field) == value for field, value in filters.items())
            ],
        )

    async def today_appointments(self, day: str | None = None) -> list[Record]:
        day = day or date.today().isoformat()
        return await self._view(
            today_appointments_key(day),
            APPOINTMENTS,
            lambda records: [record for record in records if record.get("date") == day],
        )

    async def _customer_view(self, key: str, collection: str, customer_id: str) -> list[Record]:
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        customer = await self.get_record(CUSTOMERS, customer_id)
        if customer is None:
            return []
        name = customer.get("name")
        return await self._build_view(
            key,
            collection,
            lambda records: [record for record in records if record.get("patientName") == name],
        )

    async def customer_appointments(self, customer_id: str) -> list[Record]:
        return await self._customer_view(
            customer_appointments_key(customer_id), APPOINTMENTS, customer_id
        )

    async def customer_invoices(self, customer_id: str) -> list[Record]:
        return await self._customer_view(customer_invoices_key(customer_id), INVOICES, customer_id)

    async def add_record(self, collection: str, record: Record) -> Record:
        name = normalize_collection(collection)
        draft = dict(record)
        if not draft.get("id"):
            draft["id"] = new_record_id(name)
        return await self.mutations(name).add(
            lambda: self.store.append(name, draft),
            draft,
            invalidate=invalidation_patterns(name, "add"),
            on_error=self._report_failure("add", name),
        )

    async def update_record(self, collection: str, record: Record) -> Record:
        name = normalize_collection(collection)
        if not record.get("id"):
            raise ValueError("record id is required to update")
        return await self.mutations(name).update(
            lambda: self.store.update(name, record),
            record,
            invalidate=invalidation_patterns(name, "update"),
            on_error=self._report_failure("update", name),
        )

    async def delete_record(self, collection: str, record_id: str) -> None:
        name = normalize_collection(collection)
        if not record_id:
            raise ValueError("record id is required to delete")
        await self.mutations(name).delete(
            lambda: self.store.delete(name, record_id),
            record_id,
            invalidate=invalidation_patterns(name, "delete"),
            on_error=self._report_failure("delete", name),
        )

    async def refetch(self, collection: str) -> FetchResult:
        """Read the collection from the store and drop the views built on it."""
        fetcher = self.fetcher(collection)
        result = await fetcher.refetch()
        if result.state is FetchState.READY:
            self.cache.invalidate_pattern(f"{fetcher.collection}:")
        return result

    async def refetch_all(self) -> dict[str, FetchResult]:
        names = list(self._fetchers)
        results = await asyncio.gather(*(self._fetchers[name].refetch() for name in names))
        return dict(zip(names, results))

    async def focus_regained(self) -> int:
        return await self.signals.emit(Trigger.FOCUS_REGAINED)

    def clear_cache(self) -> None:
        self.cache.clear()

    def get_cache_stats(self) -> dict[str, Any]:
        return self.cache.get_stats()

    def _on_storage_change(self, change: StorageChange) -> None:
        self.signals.emit_nowait(Trigger.BROADCAST, change=change)

    async def _poll_storage(self) -> None:
        self.storage.poll()

    async def start(self) -> None:
        """Restore the session, load the preloaded collections, start timers."""
        if self._started:
            return
        self._started = True

        if self._unsubscribe_storage is None:
            self._unsubscribe_storage = self.storage.subscribe(self._on_storage_change)
        if isinstance(self.storage, FileSessionStorage):
            self._storage_poll = PeriodicTask(
                "session-storage-poll", self._storage_poll_seconds, self._poll_storage
            )
            self._storage_poll.start()

        try:
            await self.session.restore()
        except Exception:
            logger.exception("Session restore failed")

        await asyncio.gather(*(self._fetchers[name].start() for name in PRELOADED_COLLECTIONS))
        self.monitor.start()

    async def stop(self) -> None:
        self._started = False
        await self.monitor.stop()
        for fetcher in self._fetchers.values():
            await fetcher.stop()
        if self._storage_poll is not None:
            await self._storage_poll.stop()
            self._storage_poll = None
        if self._unsubscribe_storage is not None:
            self._unsubscribe_storage()
            self._unsubscribe_storage = None
        close = getattr(self.store, "close", None)
        if close is not None:
            await close()

    def get_health(self) -> dict[str, Any]:
        return {
            "store": self.store.get_health(),
            "cache": {key: value for key, value in self.cache.get_stats().items() if key != "entries"},
            "fetchers": {name: fetcher.get_health() for name, fetcher in self._fetchers.items()},
            "mutations": {name: m.get_health() for name, m in self._mutations.items()},
            "authMonitor": self.monitor.get_health(),
            "session": self.session.get_session(),
        }
