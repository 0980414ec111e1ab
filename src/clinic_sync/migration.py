"""
Copy collections from one store to another and seed empty collections.

Both ends speak the ``CollectionStore`` contract, so a migration reads every
record from the source and overwrites the collection on the target. Each
collection is migrated on its own; a failure is recorded in the summary and
the remaining collections still run.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from .backend import CollectionStore, StoreError
from .models import (
    APPOINTMENTS,
    CUSTOMERS,
    INVOICES,
    MEDICAL_RECORDS,
    MEDICATIONS,
    STAFF,
    Record,
    normalize_collection,
)

logger = logging.getLogger(__name__)

MIGRATED_COLLECTIONS = (CUSTOMERS, APPOINTMENTS, MEDICATIONS, INVOICES, STAFF, MEDICAL_RECORDS)


def _describe(exc: StoreError) -> str:
    return f"{exc.code}: {exc.message}"


@dataclass
class MigrationResult:
    collection: str
    success: bool
    record_count: int = 0
    skipped: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "collection": self.collection,
            "success": self.success,
            "recordCount": self.record_count,
            "skipped": self.skipped,
            "error": self.error,
        }


@dataclass
class MigrationSummary:
    results: list[MigrationResult] = field(default_factory=list)

    @property
    def successful(self) -> int:
        return sum(1 for result in self.results if result.success)

    @property
    def failed(self) -> int:
        return len(self.results) - self.successful

    @property
    def total_records(self) -> int:
        return sum(result.record_count for result in self.results if result.success)

    @property
    def errors(self) -> list[str]:
        return [f"{r.collection}: {r.error}" for r in self.results if not r.success]

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalCollections": len(self.results),
            "successfulMigrations": self.successful,
            "failedMigrations": self.failed,
            "totalRecords": self.total_records,
            "results": [result.to_dict() for result in self.results],
            "errors": self.errors,
        }


@dataclass
class CollectionComparison:
    collection: str
    source_count: int = 0
    target_count: int = 0
    missing_ids: list[str] = field(default_factory=list)
    extra_ids: list[str] = field(default_factory=list)
    error: str | None = None

    @property
    def match(self) -> bool:
        return (
            self.error is None
            and self.source_count == self.target_count
            and not self.missing_ids
            and not self.extra_ids
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "collection": self.collection,
            "sourceCount": self.source_count,
            "targetCount": self.target_count,
            "missingIds": self.missing_ids,
            "extraIds": self.extra_ids,
            "match": self.match,
            "error": self.error,
        }


async def migrate_collection(
    source: CollectionStore, target: CollectionStore, collection: str
) -> MigrationResult:
    """Overwrite ``collection`` on ``target`` with the records in ``source``.

    An empty source collection is skipped so the target keeps whatever it
    already holds.
    """
    name = normalize_collection(collection)
    logger.info("Migrating collection %s", name)
    try:
        records = await source.get(name)
        if not records:
            logger.info("Collection %s is empty, skipping", name)
            return MigrationResult(name, success=True, skipped=True)
        await target.write(name, records)
    except StoreError as exc:
        logger.warning("Migration of %s failed: %s", name, _describe(exc))
        return MigrationResult(name, success=False, error=_describe(exc))

    logger.info("Migrated %d records of %s", len(records), name)
    return MigrationResult(name, success=True, record_count=len(records))


async def migrate_all(
    source: CollectionStore,
    target: CollectionStore,
    collections: Iterable[str] = MIGRATED_COLLECTIONS,
) -> MigrationSummary:
    summary = MigrationSummary()
    # One collection at a time keeps the target's write quota predictable.
    for collection in collections:
        summary.results.append(await migrate_collection(source, target, collection))
    logger.info(
        "Migration finished: %d succeeded, %d failed, %d records",
        summary.successful,
        summary.failed,
        summary.total_records,
    )
    return summary


async def compare_collection(
    source: CollectionStore, target: CollectionStore, collection: str
) -> CollectionComparison:
    name = normalize_collection(collection)
    comparison = CollectionComparison(name)
    try:
        source_records = await source.get(name)
        target_records = await target.get(name)
    except StoreError as exc:
        comparison.error = _describe(exc)
        return comparison

    source_ids = [str(record.get("id")) for record in source_records]
    target_ids = {str(record.get("id")) for record in target_records}
    comparison.source_count = len(source_records)
    comparison.target_count = len(target_records)
    comparison.missing_ids = [record_id for record_id in source_ids if record_id not in target_ids]
    comparison.extra_ids = sorted(target_ids.difference(source_ids))
    return comparison


async def verify_migration(
    source: CollectionStore,
    target: CollectionStore,
    collections: Iterable[str] = MIGRATED_COLLECTIONS,
) -> dict[str, Any]:
    """Compare record counts and ids per collection between two stores."""
    details = [await compare_collection(source, target, collection) for collection in collections]
    verified = all(detail.match for detail in details)
    if not verified:
        logger.warning(
            "Migration verification found differences in %s",
            ", ".join(detail.collection for detail in details if not detail.match),
        )
    return {"verified": verified, "details": [detail.to_dict() for detail in details]}


async def seed_if_empty(
    store: CollectionStore, collection: str, seed: list[Record]
) -> list[Record]:
    """Return the collection, first writing ``seed`` into it when it is empty."""
    name = normalize_collection(collection)
    existing = await store.get(name)
    if existing or not seed:
        return existing
    logger.info("Seeding %s with %d records", name, len(seed))
    await store.write(name, seed)
    return list(seed)
