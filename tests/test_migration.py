from __future__ import annotations

import asyncio
from typing import Any

import pytest

from clinic_sync.backend import DEMO_DATA, InMemoryCollectionStore, StoreError
from clinic_sync.migration import (
    MIGRATED_COLLECTIONS,
    migrate_all,
    migrate_collection,
    seed_if_empty,
    verify_migration,
)


class RejectingTarget(InMemoryCollectionStore):
    def __init__(self, rejected: str):
        super().__init__()
        self.rejected = rejected

    async def write(self, collection: str, records: list[dict[str, Any]]) -> None:
        if collection == self.rejected:
            raise StoreError("store_rejected", "Invalid collection name")
        await super().write(collection, records)


def test_migrate_collection_overwrites_target():
    source = InMemoryCollectionStore(seed=DEMO_DATA)
    target = InMemoryCollectionStore(seed={"staff": [{"id": "OLD"}]})

    result = asyncio.run(migrate_collection(source, target, "staff"))

    assert result.success is True
    assert result.record_count == 3
    assert [s["id"] for s in asyncio.run(target.get("staff"))] == ["STAFF001", "STAFF002", "STAFF005"]


def test_empty_source_collection_is_skipped():
    source = InMemoryCollectionStore(seed=DEMO_DATA)
    target = InMemoryCollectionStore(seed={"medications": [{"id": "M1"}]})

    result = asyncio.run(migrate_collection(source, target, "medications"))

    assert result.to_dict() == {
        "collection": "medications",
        "success": True,
        "recordCount": 0,
        "skipped": True,
        "error": None,
    }
    assert asyncio.run(target.get("medications")) == [{"id": "M1"}]


def test_failed_collection_does_not_stop_the_rest():
    source = InMemoryCollectionStore(seed=DEMO_DATA)
    target = RejectingTarget("appointments")

    summary = asyncio.run(migrate_all(source, target, ["patients", "appointments", "invoices"]))

    payload = summary.to_dict()
    assert payload["totalCollections"] == 3
    assert payload["successfulMigrations"] == 2
    assert payload["failedMigrations"] == 1
    assert payload["totalRecords"] == 3
    assert payload["errors"] == ["appointments: store_rejected: Invalid collection name"]
    assert len(asyncio.run(target.get("customers"))) == 2
    assert len(asyncio.run(target.get("invoices"))) == 1


def test_unknown_collection_is_rejected_before_any_read():
    source = InMemoryCollectionStore(seed=DEMO_DATA)

    with pytest.raises(ValueError):
        asyncio.run(migrate_collection(source, InMemoryCollectionStore(), "rooms"))

    assert source.get_health()["reads"] == 0


def test_default_collections_follow_the_sheets_tabs():
    assert MIGRATED_COLLECTIONS == (
        "customers", "appointments", "medications", "invoices", "staff", "medicalRecords",
    )


def test_verify_after_migration_matches():
    source = InMemoryCollectionStore(seed=DEMO_DATA)
    target = InMemoryCollectionStore()
    asyncio.run(migrate_all(source, target))

    report = asyncio.run(verify_migration(source, target))

    assert report["verified"] is True
    assert all(detail["match"] for detail in report["details"])


def test_verify_reports_missing_and_extra_ids():
    source = InMemoryCollectionStore(seed=DEMO_DATA)
    target = InMemoryCollectionStore(seed={"customers": [{"id": "C1"}, {"id": "C9"}]})

    report = asyncio.run(verify_migration(source, target, ["customers"]))

    assert report["verified"] is False
    assert report["details"] == [
        {
            "collection": "customers",
            "sourceCount": 2,
            "targetCount": 2,
            "missingIds": ["C2"],
            "extraIds": ["C9"],
            "match": False,
            "error": None,
        }
    ]


def test_verify_records_read_failures():
    class Offline(InMemoryCollectionStore):
        async def get(self, collection: str) -> list[dict[str, Any]]:
            raise StoreError("store_unavailable", "offline")

    report = asyncio.run(verify_migration(InMemoryCollectionStore(seed=DEMO_DATA), Offline(), ["staff"]))

    assert report["verified"] is False
    assert report["details"][0]["error"] == "store_unavailable: offline"


def test_seed_if_empty_writes_only_into_empty_collections():
    store = InMemoryCollectionStore(seed={"staff": [{"id": "S1"}]})
    seed = [{"id": "M1", "name": "Paracetamol"}]

    seeded = asyncio.run(seed_if_empty(store, "medications", seed))
    untouched = asyncio.run(seed_if_empty(store, "staff", [{"id": "S2"}]))

    assert seeded == seed
    assert asyncio.run(store.get("medications")) == seed
    assert untouched == [{"id": "S1"}]
    assert store.get_health()["writes"] == 1


def test_seed_if_empty_propagates_store_errors():
    class Offline(InMemoryCollectionStore):
        async def get(self, collection: str) -> list[dict[str, Any]]:
            raise StoreError("store_unavailable", "offline")

    with pytest.raises(StoreError):
        asyncio.run(seed_if_empty(Offline(), "staff", [{"id": "S1"}]))
