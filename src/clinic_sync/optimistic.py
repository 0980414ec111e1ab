"""
Optimistic create/update/delete against the cached collection array.

Every mutation follows the same protocol: snapshot the cached array, write
the speculative array, await the remote call, then either confirm
(reconciling with the record the store returned) or restore the snapshot.
The settle write is conditional on the version the speculative write
produced; when an overlapping mutation or refetch has written the key in
the meantime the key is dropped instead of overwritten, so the next read
goes back to the store.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, TypeVar

from .cache_store import CacheConflictError, CacheStore, collection_key
from .models import Record, find_by_id, is_record

logger = logging.getLogger(__name__)

R = TypeVar("R")

SuccessCallback = Callable[[Record], Any]
ErrorCallback = Callable[[Exception, Record], Any]
Mutation = Callable[[], Awaitable[R]]


async def _maybe_await(value: Any) -> None:
    if inspect.isawaitable(value):
        await value


class OptimisticMutations:
    """Optimistic mutation helpers bound to one collection of one cache."""

    def __init__(self, collection: str, cache: CacheStore):
        self.collection = collection
        self.cache_key = collection_key(collection)
        self._cache = cache
        self._pending = 0
        self._rollbacks = 0
        self._conflicts = 0

    @property
    def is_updating(self) -> bool:
        return self._pending > 0

    def _settle(self, value: list[Record], expected_version: int, action: str) -> None:
        try:
            self._cache.compare_and_set(self.cache_key, value, expected_version)
        except CacheConflictError as exc:
            self._conflicts += 1
            self._cache.invalidate(self.cache_key)
            logger.warning(
                "Skipped %s for %s: %s; dropped cached array so it is refetched",
                action,
                self.collection,
                exc,
            )

    async def _run(
        self,
        action: str,
        subject_id: str,
        snapshot: list[Record] | None,
        mutate: Mutation[R],
        build_optimistic: Callable[[list[Record]], list[Record]],
        reconcile: Callable[[list[Record], Any], list[Record] | None] | None,
        confirmed_record: Callable[[Any], Record],
        error_record: Record,
        invalidate: Iterable[str],
        on_success: SuccessCallback | None,
        on_error: ErrorCallback | None,
    ) -> R:
        optimistic_version: int | None = None
        optimistic: list[Record] | None = None

        self._pending += 1
        try:
            # Nothing cached means nothing to speculate on; a partial array
            # would otherwise be served as the whole collection.
            if snapshot is not None:
                optimistic = build_optimistic(snapshot)
                optimistic_version = self._cache.set(self.cache_key, optimistic)
                logger.info("Optimistic %s applied for %s:%s", action, self.collection, subject_id)

            try:
                result = await mutate()
            except BaseException as exc:
                # Cancellation rolls back too; only real failures reach on_error.
                if snapshot is not None and optimistic_version is not None:
                    self._rollbacks += 1
                    self._settle(snapshot, optimistic_version, "rollback")
                    logger.warning(
                        "Optimistic %s rolled back for %s:%s (%r)",
                        action,
                        self.collection,
                        subject_id,
                        exc,
                    )
                if on_error is not None and isinstance(exc, Exception):
                    try:
                        await _maybe_await(on_error(exc, error_record))
                    except Exception:
                        logger.exception("on_error callback failed for %s:%s", self.collection, subject_id)
                raise

            if reconcile is not None and optimistic is not None and optimistic_version is not None:
                reconciled = reconcile(optimistic, result)
                if reconciled is not None:
                    self._settle(reconciled, optimistic_version, "reconcile")

            for pattern in invalidate:
                self._cache.invalidate_pattern(pattern)

            if on_success is not None:
                await _maybe_await(on_success(confirmed_record(result)))
            logger.info("Optimistic %s confirmed for %s:%s", action, self.collection, subject_id)
            return result
        finally:
            self._pending -= 1

    async def update(
        self,
        mutate: Mutation[R],
        record: Record,
        *,
        invalidate: Iterable[str] = (),
        on_success: SuccessCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> R:
        record_id = record["id"]

        def build(current: list[Record]) -> list[Record]:
            replaced = [record if item.get("id") == record_id else item for item in current]
            if find_by_id(current, record_id) is None:
                replaced.append(record)
            return replaced

        def reconcile(current: list[Record], result: Any) -> list[Record] | None:
            if not is_record(result) or result["id"] != record_id:
                return None
            return [result if item.get("id") == record_id else item for item in current]

        return await self._run(
            "update",
            record_id,
            self._cache.get(self.cache_key),
            mutate,
            build,
            reconcile,
            lambda result: result if is_record(result) else record,
            record,
            invalidate,
            on_success,
            on_error,
        )

    async def delete(
        self,
        mutate: Mutation[R],
        record_id: str,
        *,
        invalidate: Iterable[str] = (),
        on_success: SuccessCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> R:
        snapshot = self._cache.get(self.cache_key)
        # Uncached records are reported by id alone.
        existing = find_by_id(snapshot or [], record_id) or {"id": record_id}

        return await self._run(
            "delete",
            record_id,
            snapshot,
            mutate,
            lambda items: [item for item in items if item.get("id") != record_id],
            None,
            lambda _result: existing,
            existing,
            invalidate,
            on_success,
            on_error,
        )

    async def add(
        self,
        mutate: Mutation[R],
        record: Record,
        *,
        invalidate: Iterable[str] = (),
        on_success: SuccessCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> R:
        placeholder_id = record["id"]

        def reconcile(current: list[Record], result: Any) -> list[Record] | None:
            # Stores that answer with a status instead of the record leave
            # the placeholder in place.
            if not is_record(result):
                return None
            server_id = result["id"]
            merged: list[Record] = []
            for item in current:
                item_id = item.get("id")
                if item_id == placeholder_id:
                    merged.append(result)
                elif item_id != server_id:
                    merged.append(item)
            if server_id != placeholder_id:
                logger.info(
                    "Replaced optimistic %s:%s with server id %s",
                    self.collection,
                    placeholder_id,
                    server_id,
                )
            return merged

        return await self._run(
            "add",
            placeholder_id,
            self._cache.get(self.cache_key),
            mutate,
            lambda items: [*items, record],
            reconcile,
            lambda result: result if is_record(result) else record,
            record,
            invalidate,
            on_success,
            on_error,
        )

    def get_health(self) -> dict[str, Any]:
        return {
            "collection": self.collection,
            "pending": self._pending,
            "rollbacks": self._rollbacks,
            "conflicts": self._conflicts,
        }
