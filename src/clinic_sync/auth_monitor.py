"""
Background watch over the logged-in staff account.

Every check re-reads the staff collection (bypassing the cache) and logs the
session out when the account was deleted, its password changed, or its email
changed elsewhere. Failures of the check itself are only logged: a network
blip must not lock staff out.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from typing import Any

from .auth import AuthSession, LogoutReason
from .backend import CollectionStore
from .models import STAFF, find_by_id
from .session_storage import IS_LOGGED_IN, SESSION_EXPIRATION, StorageChange
from .signals import PeriodicTask, SignalHub, Trigger

logger = logging.getLogger(__name__)

AUTH_CHECK_INTERVAL_SECONDS = float(os.getenv("CLINIC_SYNC_AUTH_CHECK_SECONDS", "120"))


class AuthMonitor:
    """Periodic staff re-check plus reaction to session changes in peer processes."""

    def __init__(
        self,
        session: AuthSession,
        store: CollectionStore,
        *,
        interval_seconds: float = AUTH_CHECK_INTERVAL_SECONDS,
        signals: SignalHub | None = None,
    ):
        self._session = session
        self._store = store
        self._interval_seconds = interval_seconds
        self._signals = signals
        self._periodic: PeriodicTask | None = None
        self._unsubscribe: Callable[[], None] | None = None

        self._checks = 0
        self._check_failures = 0
        self._last_error: str | None = None
        self._last_logout_reason: LogoutReason | None = None

    async def check(self) -> LogoutReason | None:
        """Run one check; returns the reason when it forced a logout."""
        if not self._session.is_authenticated:
            return None
        if not self._session.check_expiration():
            return self._remember(LogoutReason.SESSION_EXPIRED)

        self._checks += 1
        user = self._session.current_user or {}
        try:
            staff = find_by_id(await self._store.get(STAFF), user.get("id", ""))
        except Exception as exc:
            self._check_failures += 1
            self._last_error = f"{exc.__class__.__name__}: {exc}"
            logger.warning("Staff check failed, keeping session: %s", exc)
            return None

        # The session may have ended while the fetch was in flight.
        if not self._session.is_authenticated:
            return None

        reason = self._session.verify_record(staff)
        if reason is not None:
            self._session.logout(reason)
            return self._remember(reason)

        if staff is not None:
            self._session.update_current_user(staff)
        return None

    def _remember(self, reason: LogoutReason) -> LogoutReason:
        self._last_logout_reason = reason
        return reason

    async def handle_storage_change(self, change: StorageChange) -> LogoutReason | None:
        """React to a session key changed by another process."""
        if change.new_value is None:
            if not self._session.is_authenticated:
                return None
            if change.key == IS_LOGGED_IN:
                self._session.logout(LogoutReason.LOGGED_OUT_ELSEWHERE)
                return self._remember(LogoutReason.LOGGED_OUT_ELSEWHERE)
            if change.key == SESSION_EXPIRATION:
                self._session.logout(LogoutReason.LOGGED_OUT_ELSEWHERE, notify=False)
                return self._remember(LogoutReason.LOGGED_OUT_ELSEWHERE)
            return None

        if change.key == IS_LOGGED_IN and change.new_value == "true" and not self._session.is_authenticated:
            # Logged in from a peer; adopt its session once all keys are written.
            await self._session.restore()
        return None

    def start(self) -> None:
        if self._periodic is None:
            self._periodic = PeriodicTask("auth-monitor", self._interval_seconds, self.check)
            self._periodic.start()
        if self._signals is not None and self._unsubscribe is None:
            self._unsubscribe = self._signals.subscribe(Trigger.BROADCAST, self._on_broadcast)

    async def _on_broadcast(self, change: StorageChange | None = None, **_payload: Any) -> None:
        if change is not None:
            await self.handle_storage_change(change)

    async def stop(self) -> None:
        if self._periodic is not None:
            await self._periodic.stop()
            self._periodic = None
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def get_health(self) -> dict[str, Any]:
        return {
            "intervalSeconds": self._interval_seconds,
            "running": self._periodic is not None and self._periodic.running,
            "checks": self._checks,
            "checkFailures": self._check_failures,
            "lastError": self._last_error,
            "lastLogoutReason": self._last_logout_reason.value if self._last_logout_reason else None,
        }
