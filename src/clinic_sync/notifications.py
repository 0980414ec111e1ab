"""
Toast-style notifications raised by the data layer.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

MAX_PENDING_NOTIFICATIONS = 50


@dataclass(frozen=True)
class Notification:
    title: str
    description: str
    variant: str = "default"
    duration_ms: int = 5000
    cause: str | None = None
    redirect_to: str | None = None
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


NotificationListener = Callable[[Notification], None]


class Notifier:
    """Queues notifications for the host and fans them out to listeners."""

    def __init__(self, max_pending: int = MAX_PENDING_NOTIFICATIONS):
        self._pending: deque[Notification] = deque(maxlen=max_pending)
        self._listeners: list[NotificationListener] = []

    def subscribe(self, listener: NotificationListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    def notify(self, notification: Notification) -> None:
        if notification.variant == "destructive":
            logger.warning("%s: %s", notification.title, notification.description)
        else:
            logger.info("%s: %s", notification.title, notification.description)
        self._pending.append(notification)
        for listener in list(self._listeners):
            try:
                listener(notification)
            except Exception:
                logger.exception("Notification listener failed")

    def pending(self) -> list[Notification]:
        return list(self._pending)

    def drain(self) -> list[Notification]:
        drained = list(self._pending)
        self._pending.clear()
        return drained
