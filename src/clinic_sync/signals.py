"""
External invalidation signals.

Hosts feed three kinds of triggers into the data layer: a periodic timer,
"focus regained" (the user came back to the app), and a cross-process
broadcast (another process changed shared session storage). Browser hosts
map these to interval/focus/storage events; a CLI or server host supplies
its own.
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

Listener = Callable[..., Any]


class Trigger(enum.Enum):
    PERIODIC = "periodic"
    FOCUS_REGAINED = "focus_regained"
    BROADCAST = "broadcast"


class SignalHub:
    """Fan-out of triggers to subscribed listeners (sync or async)."""

    def __init__(self) -> None:
        self._listeners: dict[Trigger, list[Listener]] = {trigger: [] for trigger in Trigger}
        self._scheduled: set[asyncio.Task[int]] = set()

    def subscribe(self, trigger: Trigger, listener: Listener) -> Callable[[], None]:
        self._listeners[trigger].append(listener)

        def _unsubscribe() -> None:
            try:
                self._listeners[trigger].remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    def listener_count(self, trigger: Trigger) -> int:
        return len(self._listeners[trigger])

    async def emit(self, trigger: Trigger, **payload: Any) -> int:
        """Deliver ``trigger`` to every listener; returns how many ran cleanly."""
        delivered = 0
        for listener in list(self._listeners[trigger]):
            try:
                result = listener(**payload)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception:
                logger.exception("Listener for %s failed", trigger.value)
        return delivered

    def emit_nowait(self, trigger: Trigger, **payload: Any) -> asyncio.Task[int] | None:
        """Schedule :meth:`emit` from synchronous code such as storage callbacks."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Dropped %s signal: no running event loop", trigger.value)
            return None
        task = loop.create_task(self.emit(trigger, **payload))
        self._scheduled.add(task)
        task.add_done_callback(self._scheduled.discard)
        return task


class PeriodicTask:
    """Runs an async callback every ``interval_seconds`` until stopped."""

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        callback: Callable[[], Awaitable[Any]],
    ):
        self.name = name
        self.interval_seconds = interval_seconds
        self._callback = callback
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self._callback()
            except Exception:
                logger.exception("Periodic task %s failed", self.name)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=self.name)

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
