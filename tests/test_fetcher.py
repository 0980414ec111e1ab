from __future__ import annotations

import asyncio
from typing import Any

from clinic_sync.backend import StoreError
from clinic_sync.cache_store import CacheStore
from clinic_sync.fetcher import CollectionFetcher, FetchState
from clinic_sync.signals import SignalHub, Trigger


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeStore:
    def __init__(self, data: dict[str, list[dict[str, Any]]] | None = None):
        self.data = data or {}
        self.get_calls: list[str] = []
        self.failure: Exception | None = None

    async def get(self, collection: str) -> list[dict[str, Any]]:
        self.get_calls.append(collection)
        if self.failure is not None:
            raise self.failure
        return [dict(record) for record in self.data.get(collection, [])]

    def get_health(self) -> dict[str, Any]:
        return {"backend": "fake"}


APPOINTMENTS = [{"id": "A1", "date": "2024-07-30"}, {"id": "A2", "date": "2024-07-30"}]


def _fetcher(store: FakeStore, clock: FakeClock, **kwargs: Any) -> CollectionFetcher:
    cache = kwargs.pop("cache", None) or CacheStore(clock=clock)
    return CollectionFetcher("appointments", store, cache, clock=clock, **kwargs)


def test_second_fetch_within_ttl_is_served_from_cache():
    clock = FakeClock()
    store = FakeStore({"appointments": APPOINTMENTS})
    fetcher = _fetcher(store, clock)

    first = asyncio.run(fetcher.fetch())
    clock.advance(60)
    second = asyncio.run(fetcher.fetch())

    assert store.get_calls == ["appointments"]
    assert first.state is FetchState.READY
    assert first.from_cache is False
    assert second.from_cache is True
    assert second.data == APPOINTMENTS


def test_fetch_after_ttl_goes_back_to_store():
    clock = FakeClock()
    store = FakeStore({"appointments": APPOINTMENTS})
    fetcher = _fetcher(store, clock)

    asyncio.run(fetcher.fetch())
    clock.advance(121)
    result = asyncio.run(fetcher.fetch())

    assert store.get_calls == ["appointments", "appointments"]
    assert result.from_cache is False


def test_refetch_bypasses_cache():
    clock = FakeClock()
    store = FakeStore({"appointments": APPOINTMENTS})
    fetcher = _fetcher(store, clock)

    asyncio.run(fetcher.fetch())
    asyncio.run(fetcher.refetch())

    assert len(store.get_calls) == 2


def test_failure_keeps_stale_cache_data_and_does_not_raise():
    clock = FakeClock()
    store = FakeStore({"appointments": APPOINTMENTS})
    fetcher = _fetcher(store, clock)
    asyncio.run(fetcher.fetch())
    clock.advance(500)
    store.failure = StoreError("store_unavailable", "offline")

    result = asyncio.run(fetcher.fetch())

    assert result.state is FetchState.ERROR
    assert fetcher.is_error
    assert isinstance(result.error, StoreError)
    assert result.data == APPOINTMENTS


def test_failure_without_any_data_yields_empty_list():
    clock = FakeClock()
    store = FakeStore()
    store.failure = StoreError("store_unavailable", "offline")
    fetcher = _fetcher(store, clock)

    result = asyncio.run(fetcher.fetch())

    assert result.state is FetchState.ERROR
    assert result.data == []


def test_successful_fetch_clears_previous_error():
    clock = FakeClock()
    store = FakeStore({"appointments": APPOINTMENTS})
    store.failure = StoreError("store_unavailable", "offline")
    fetcher = _fetcher(store, clock)
    asyncio.run(fetcher.fetch())

    store.failure = None
    result = asyncio.run(fetcher.fetch())

    assert result.state is FetchState.READY
    assert result.error is None


def test_disabled_fetcher_never_calls_store():
    clock = FakeClock()
    store = FakeStore({"appointments": APPOINTMENTS})
    fetcher = _fetcher(store, clock, enabled=False)

    result = asyncio.run(fetcher.fetch(force=True))

    assert store.get_calls == []
    assert result.state is FetchState.IDLE


def test_is_stale_after_stale_time():
    clock = FakeClock()
    fetcher = _fetcher(FakeStore({"appointments": APPOINTMENTS}), clock, stale_time=30)

    assert fetcher.is_stale is True
    asyncio.run(fetcher.fetch())
    assert fetcher.is_stale is False
    clock.advance(31)
    assert fetcher.is_stale is True


def test_focus_only_refetches_stale_data():
    clock = FakeClock()
    store = FakeStore({"appointments": APPOINTMENTS})
    fetcher = _fetcher(store, clock, stale_time=30)
    asyncio.run(fetcher.fetch())

    clock.advance(10)
    assert asyncio.run(fetcher.on_focus()) is False

    clock.advance(200)
    assert asyncio.run(fetcher.on_focus()) is True
    assert len(store.get_calls) == 2


def test_focus_signal_reaches_started_fetcher():
    clock = FakeClock()
    store = FakeStore({"appointments": APPOINTMENTS})
    signals = SignalHub()
    fetcher = _fetcher(store, clock, stale_time=30, signals=signals)

    async def scenario() -> int:
        await fetcher.start()
        clock.advance(500)
        delivered = await signals.emit(Trigger.FOCUS_REGAINED)
        await fetcher.stop()
        return delivered

    assert asyncio.run(scenario()) == 1
    assert len(store.get_calls) == 2
    assert signals.listener_count(Trigger.FOCUS_REGAINED) == 0


def test_periodic_refetch_runs_on_interval():
    store = FakeStore({"appointments": APPOINTMENTS})
    cache = CacheStore()
    fetcher = CollectionFetcher("appointments", store, cache, refetch_interval=0.01)

    async def scenario() -> dict[str, Any]:
        await fetcher.start()
        cache.clear()
        await asyncio.sleep(0.1)
        health = fetcher.get_health()
        await fetcher.stop()
        return health

    health = asyncio.run(scenario())

    assert health["periodicRunning"] is True
    assert len(store.get_calls) >= 2
    assert fetcher.get_health()["periodicRunning"] is False
