from __future__ import annotations

import asyncio

from clinic_sync.signals import PeriodicTask, SignalHub, Trigger


def test_emit_runs_sync_and_async_listeners():
    hub = SignalHub()
    calls: list[str] = []

    async def async_listener(**payload) -> None:
        calls.append(f"async:{payload.get('source')}")

    hub.subscribe(Trigger.FOCUS_REGAINED, lambda **payload: calls.append("sync"))
    hub.subscribe(Trigger.FOCUS_REGAINED, async_listener)

    delivered = asyncio.run(hub.emit(Trigger.FOCUS_REGAINED, source="window"))

    assert delivered == 2
    assert calls == ["sync", "async:window"]


def test_failing_listener_is_logged_and_skipped():
    hub = SignalHub()
    calls: list[str] = []

    def broken(**payload) -> None:
        raise RuntimeError("boom")

    hub.subscribe(Trigger.BROADCAST, broken)
    hub.subscribe(Trigger.BROADCAST, lambda **payload: calls.append("ok"))

    assert asyncio.run(hub.emit(Trigger.BROADCAST)) == 1
    assert calls == ["ok"]


def test_unsubscribe_is_idempotent():
    hub = SignalHub()
    unsubscribe = hub.subscribe(Trigger.PERIODIC, lambda **payload: None)

    unsubscribe()
    unsubscribe()

    assert hub.listener_count(Trigger.PERIODIC) == 0


def test_emit_nowait_without_loop_drops_signal():
    hub = SignalHub()
    calls: list[str] = []
    hub.subscribe(Trigger.BROADCAST, lambda **payload: calls.append("called"))

    assert hub.emit_nowait(Trigger.BROADCAST) is None
    assert calls == []


def test_emit_nowait_schedules_on_running_loop():
    hub = SignalHub()
    calls: list[str] = []
    hub.subscribe(Trigger.BROADCAST, lambda **payload: calls.append(payload["key"]))

    async def scenario() -> int:
        task = hub.emit_nowait(Trigger.BROADCAST, key="isLoggedIn")
        return await task

    assert asyncio.run(scenario()) == 1
    assert calls == ["isLoggedIn"]


def test_periodic_task_runs_until_stopped():
    ticks: list[int] = []

    async def tick() -> None:
        ticks.append(len(ticks))
        if len(ticks) == 2:
            raise RuntimeError("one bad tick")

    async def scenario() -> tuple[bool, bool]:
        task = PeriodicTask("ticker", 0.01, tick)
        task.start()
        await asyncio.sleep(0.1)
        running = task.running
        await task.stop()
        return running, task.running

    assert asyncio.run(scenario()) == (True, False)
    assert len(ticks) >= 3
