from __future__ import annotations

import asyncio
from typing import Any

import pytest

from clinic_sync.backend import DEMO_DATA, InMemoryCollectionStore, StoreError
from clinic_sync.data_context import ClinicData, build_store
from clinic_sync.fetcher import FetchState
from clinic_sync.remote_store import SheetsApiStore
from clinic_sync.session_storage import MemorySessionStorage


class FlakyStore(InMemoryCollectionStore):
    def __init__(self) -> None:
        super().__init__(seed=DEMO_DATA)
        self.offline = False

    async def get(self, collection: str) -> list[dict[str, Any]]:
        if self.offline:
            raise StoreError("store_unavailable", "offline")
        return await super().get(collection)


def _clinic(**kwargs: Any) -> tuple[ClinicData, FlakyStore]:
    store = FlakyStore()
    return ClinicData(store, **kwargs), store


def test_build_store_selects_backend(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.delenv("CLINIC_SYNC_BACKEND", raising=False)
    assert isinstance(build_store(), InMemoryCollectionStore)

    monkeypatch.setenv("CLINIC_SYNC_BACKEND", "sheets")
    assert isinstance(build_store(), SheetsApiStore)

    with pytest.raises(ValueError):
        build_store("postgres")


def test_start_preloads_collections_and_stop_cancels_timers():
    clinic, _ = _clinic()

    async def scenario() -> dict[str, Any]:
        await clinic.start()
        health = clinic.get_health()
        await clinic.stop()
        return health

    health = asyncio.run(scenario())

    assert set(health["fetchers"]) == {"customers", "appointments", "services", "invoices", "staff"}
    assert all(f["state"] == "ready" for f in health["fetchers"].values())
    assert all(f["periodicRunning"] for f in health["fetchers"].values())
    assert health["authMonitor"]["running"] is True
    assert health["store"]["backend"] == "memory"
    assert "entries" not in health["cache"]
    assert all(not f["periodicRunning"] for f in clinic.get_health()["fetchers"].values())


def test_list_records_accepts_alias_and_uses_cache():
    clinic, _ = _clinic()

    first = asyncio.run(clinic.list_records("patients"))
    second = asyncio.run(clinic.list_records("customers"))

    assert [c["id"] for c in first.data] == ["C1", "C2"]
    assert second.from_cache is True


def test_get_record_finds_by_id():
    clinic, _ = _clinic()

    assert asyncio.run(clinic.get_record("services", "S1"))["name"] == "Massage thư giãn"
    assert asyncio.run(clinic.get_record("services", "S404")) is None


def test_unknown_collection_is_rejected():
    clinic, _ = _clinic()

    with pytest.raises(ValueError):
        asyncio.run(clinic.list_records("rooms"))


def test_fetch_error_surfaces_notification_with_last_data():
    clinic, store = _clinic()
    asyncio.run(clinic.list_records("customers"))
    store.offline = True

    result = asyncio.run(clinic.list_records("customers", force=True))

    assert result.state is FetchState.ERROR
    assert len(result.data) == 2
    notifications = clinic.notifier.drain()
    assert [n.cause for n in notifications] == ["customers_fetch_failed"]


def test_add_appointment_mints_id_and_invalidates_derived_views():
    clinic, store = _clinic()
    asyncio.run(clinic.list_records("appointments"))
    clinic.cache.set("appointments:today:2024-07-30", [{"id": "A1"}])
    clinic.cache.set("appointments:customer:C1", [{"id": "A1"}])

    saved = asyncio.run(clinic.add_record("appointments", {"patientName": "Trần Thị Bình"}))

    assert saved["id"].startswith("appointments_")
    assert [a["id"] for a in clinic.cache.get("appointments")] == ["A1", saved["id"]]
    assert clinic.cache.get("appointments:today:2024-07-30") is None
    assert clinic.cache.get("appointments:customer:C1") is None
    assert len(asyncio.run(store.get("appointments"))) == 2


def test_update_customer_invalidates_customer_views_only():
    clinic, _ = _clinic()
    asyncio.run(clinic.list_records("customers"))
    clinic.cache.set("appointments:customer:C1", [1])
    clinic.cache.set("invoices:customer:C1", [2])
    clinic.cache.set("appointments:today:2024-07-30", [3])

    saved = asyncio.run(clinic.update_record("customers", {"id": "C1", "name": "An"}))

    assert saved == {"id": "C1", "name": "An"}
    assert clinic.cache.get("appointments:customer:C1") is None
    assert clinic.cache.get("invoices:customer:C1") is None
    assert clinic.cache.get("appointments:today:2024-07-30") == [3]


def test_failed_delete_rolls_back_and_notifies():
    clinic, store = _clinic()
    asyncio.run(clinic.list_records("services"))

    async def rejecting_delete(collection: str, record_id: str) -> None:
        raise StoreError("store_unavailable", "offline")

    store.delete = rejecting_delete

    with pytest.raises(StoreError):
        asyncio.run(clinic.delete_record("services", "S1"))

    assert [s["id"] for s in clinic.cache.get("services")] == ["S1"]
    notifications = clinic.notifier.drain()
    assert len(notifications) == 1
    assert notifications[0].variant == "destructive"
    assert notifications[0].cause == "services_delete_failed"


def test_update_requires_id():
    clinic, _ = _clinic()

    with pytest.raises(ValueError):
        asyncio.run(clinic.update_record("customers", {"name": "no id"}))


def test_refetch_all_reads_every_loaded_collection():
    clinic, _ = _clinic()

    results = asyncio.run(clinic.refetch_all())

    assert set(results) == {"customers", "appointments", "services", "invoices", "staff"}
    assert all(r.state is FetchState.READY and not r.from_cache for r in results.values())


def test_clear_cache_and_stats():
    clinic, _ = _clinic()
    asyncio.run(clinic.list_records("staff"))

    assert clinic.get_cache_stats()["size"] == 1
    clinic.clear_cache()
    assert clinic.get_cache_stats()["size"] == 0


def test_peer_logout_reaches_monitor_through_storage_bridge():
    storage = MemorySessionStorage()
    clinic, store = _clinic(storage=storage)
    peer = ClinicData(store, storage=storage.open_peer())

    async def scenario() -> None:
        await peer.session.login("minh.bs@clinic.com", "minh123")
        await clinic.start()
        assert clinic.session.is_authenticated
        peer.session.logout()
        for _ in range(5):
            await asyncio.sleep(0)
        await clinic.stop()

    asyncio.run(scenario())

    assert clinic.session.is_authenticated is False
    assert [n.cause for n in clinic.notifier.drain()] == ["logged_out_elsewhere"]


def test_focus_regained_refetches_stale_collections():
    clinic, _ = _clinic()

    async def scenario() -> int:
        await clinic.start()
        clinic.cache.clear()
        for fetcher in (clinic.fetcher(name) for name in ("customers", "staff")):
            fetcher._last_fetch_at = 0.0
        delivered = await clinic.focus_regained()
        await clinic.stop()
        return delivered

    assert asyncio.run(scenario()) == 5
    assert "customers" in clinic.cache
    assert "staff" in clinic.cache
    assert "services" not in clinic.cache


def test_failed_delete_of_uncached_record_still_notifies():
    clinic, store = _clinic()

    with pytest.raises(StoreError):
        asyncio.run(clinic.delete_record("services", "S404"))

    notifications = clinic.notifier.drain()
    assert [n.cause for n in notifications] == ["services_delete_failed"]
    assert "S404" in notifications[0].description


def test_get_record_caches_item_until_update():
    clinic, _ = _clinic()

    first = asyncio.run(clinic.get_record("customers", "C1"))
    assert clinic.cache.get("customers:item:C1") == first

    asyncio.run(clinic.update_record("customers", {"id": "C1", "name": "An"}))

    assert "customers:item:C1" not in clinic.cache
    assert asyncio.run(clinic.get_record("customers", "C1")) == {"id": "C1", "name": "An"}


def test_search_and_filter_views_are_dropped_on_add():
    clinic, _ = _clinic()

    doctors = asyncio.run(clinic.search_records("staff", "BS."))
    paid = asyncio.run(clinic.filter_records("invoices", {"status": "paid"}))

    assert [s["id"] for s in doctors] == ["STAFF001", "STAFF002"]
    assert [i["id"] for i in paid] == ["INV1"]
    assert len([key for key in clinic.cache.keys() if ":search:" in key or ":filtered:" in key]) == 2

    asyncio.run(clinic.add_record("invoices", {"patientName": "Trần Thị Bình", "status": "paid"}))

    assert not [key for key in clinic.cache.keys() if key.startswith("invoices:filtered:")]
    assert len(asyncio.run(clinic.filter_records("invoices", {"status": "paid"}))) == 2
    assert asyncio.run(clinic.search_records("staff", "BS.")) == doctors


def test_today_appointments_view_is_dropped_by_new_appointment():
    clinic, _ = _clinic()

    assert [a["id"] for a in asyncio.run(clinic.today_appointments("2024-07-30"))] == ["A1"]
    assert "appointments:today:2024-07-30" in clinic.cache

    asyncio.run(clinic.add_record("appointments", {"patientName": "Trần Thị Bình", "date": "2024-07-30"}))

    assert "appointments:today:2024-07-30" not in clinic.cache
    assert len(asyncio.run(clinic.today_appointments("2024-07-30"))) == 2


def test_customer_views_follow_customer_name():
    clinic, _ = _clinic()

    appointments = asyncio.run(clinic.customer_appointments("C1"))
    invoices = asyncio.run(clinic.customer_invoices("C1"))

    assert [a["id"] for a in appointments] == ["A1"]
    assert [i["id"] for i in invoices] == ["INV1"]
    assert clinic.cache.get("appointments:customer:C1") == appointments
    assert asyncio.run(clinic.customer_appointments("C404")) == []
    assert "appointments:customer:C404" not in clinic.cache

    asyncio.run(clinic.update_record("customers", {"id": "C1", "name": "An"}))

    assert "appointments:customer:C1" not in clinic.cache
    assert "invoices:customer:C1" not in clinic.cache
    assert asyncio.run(clinic.customer_appointments("C1")) == []


def test_views_over_fallback_data_are_not_cached():
    now = [1_000.0]
    clinic, store = _clinic(clock=lambda: now[0])
    asyncio.run(clinic.list_records("staff"))
    now[0] += 2 * 60 * 60
    store.offline = True

    found = asyncio.run(clinic.search_records("staff", "Minh"))

    assert [s["id"] for s in found] == ["STAFF001"]
    assert not [key for key in clinic.cache.keys() if key.startswith("staff:search:")]


def test_refetch_drops_views_of_the_collection():
    clinic, _ = _clinic()
    asyncio.run(clinic.get_record("staff", "STAFF001"))
    asyncio.run(clinic.customer_invoices("C1"))

    asyncio.run(clinic.refetch("staff"))

    assert "staff:item:STAFF001" not in clinic.cache
    assert "invoices:customer:C1" in clinic.cache
