"""
Staff session: login against the staff collection, expiration, and change
detection.

The password fingerprint kept in the session is a short non-cryptographic
digest used only to notice that the stored password changed elsewhere. It
is not a credential and must not be used to authenticate anyone.
"""

from __future__ import annotations

import enum
import hashlib
import logging
import os
import time
from collections.abc import Callable
from typing import Any

from .backend import CollectionStore
from .models import STAFF, Record, find_by_id
from .notifications import Notification, Notifier
from .session_storage import (
    IS_LOGGED_IN,
    PASSWORD_VERSION,
    SESSION_EXPIRATION,
    SESSION_KEYS,
    STAFF_DATA_VERSION,
    STAFF_ID,
)

logger = logging.getLogger(__name__)

SESSION_DURATION_SECONDS = float(os.getenv("CLINIC_SYNC_SESSION_HOURS", "2")) * 3600
DATA_VERSION = os.getenv("CLINIC_SYNC_DATA_VERSION", "1")
LOGIN_ROUTE = "/login"


class LogoutReason(enum.Enum):
    MANUAL = "manual"
    SESSION_EXPIRED = "session_expired"
    PASSWORD_CHANGED = "password_changed"
    ACCOUNT_DELETED = "account_deleted"
    ACCOUNT_INFO_CHANGED = "account_info_changed"
    LOGGED_OUT_ELSEWHERE = "logged_out_elsewhere"
    DATA_VERSION_CHANGED = "data_version_changed"


# (title, description, duration_ms)
_LOGOUT_MESSAGES: dict[LogoutReason, tuple[str, str, int]] = {
    LogoutReason.SESSION_EXPIRED: (
        "Phiên đăng nhập đã hết hạn",
        "Vui lòng đăng nhập lại để tiếp tục.",
        10000,
    ),
    LogoutReason.PASSWORD_CHANGED: (
        "Mật khẩu đã thay đổi",
        "Mật khẩu tài khoản của bạn đã được thay đổi từ nguồn khác. Vui lòng đăng nhập lại.",
        10000,
    ),
    LogoutReason.ACCOUNT_DELETED: (
        "Tài khoản không tồn tại",
        "Tài khoản của bạn đã bị xóa. Vui lòng liên hệ quản trị viên.",
        10000,
    ),
    LogoutReason.ACCOUNT_INFO_CHANGED: (
        "Thông tin tài khoản đã thay đổi",
        "Email tài khoản của bạn đã được thay đổi. Vui lòng đăng nhập lại.",
        10000,
    ),
    LogoutReason.LOGGED_OUT_ELSEWHERE: (
        "Đăng xuất từ tab khác",
        "Bạn đã đăng xuất từ tab khác.",
        3000,
    ),
    LogoutReason.DATA_VERSION_CHANGED: (
        "Phiên đăng nhập không còn hợp lệ",
        "Dữ liệu tài khoản đã được cập nhật. Vui lòng đăng nhập lại.",
        10000,
    ),
}


def fingerprint(value: str) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest()[:12]  # noqa: S324


def password_fingerprint(password: str | None) -> str:
    return fingerprint(f"pw:{password or ''}")


def data_version_fingerprint(staff: Record) -> str:
    """Digest of the app data version and the staff identity fields."""
    return fingerprint(
        f"{DATA_VERSION}:{staff.get('id', '')}:{staff.get('email', '')}:{staff.get('role', '')}"
    )


def _public_view(staff: Record) -> Record:
    return {key: value for key, value in staff.items() if key != "password"}


class AuthSession:
    """Anonymous <-> authenticated state of one process, backed by shared storage."""

    def __init__(
        self,
        store: CollectionStore,
        storage: Any,
        notifier: Notifier,
        *,
        session_duration: float = SESSION_DURATION_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._storage = storage
        self._notifier = notifier
        self._session_duration = session_duration
        self._clock = clock

        self._current_user: Record | None = None
        self._password_version: str | None = None
        self._session_expiration_ms: int | None = None

    @property
    def current_user(self) -> Record | None:
        return self._current_user

    @property
    def is_authenticated(self) -> bool:
        return self._current_user is not None

    @property
    def is_admin(self) -> bool:
        return bool(self._current_user and self._current_user.get("role") == "admin")

    @property
    def session_expiration_ms(self) -> int | None:
        stored = self._storage.get(SESSION_EXPIRATION)
        if stored is not None:
            try:
                return int(stored)
            except ValueError:
                logger.warning("Ignoring invalid %s value in storage", SESSION_EXPIRATION)
                return None
        return self._session_expiration_ms

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _persist(self, staff: Record) -> None:
        expiration = self._now_ms() + int(self._session_duration * 1000)
        self._password_version = password_fingerprint(staff.get("password"))
        self._session_expiration_ms = expiration
        self._current_user = _public_view(staff)

        # isLoggedIn is written last so peers only see a complete session.
        self._storage.set(STAFF_ID, str(staff["id"]))
        self._storage.set(SESSION_EXPIRATION, str(expiration))
        self._storage.set(PASSWORD_VERSION, self._password_version)
        self._storage.set(STAFF_DATA_VERSION, data_version_fingerprint(staff))
        self._storage.set(IS_LOGGED_IN, "true")

    def _clear_storage(self) -> None:
        # isLoggedIn goes first so peers see the logout before anything else.
        for key in SESSION_KEYS:
            self._storage.remove(key)

    async def login(self, email: str, password: str) -> bool:
        """Exact, case-sensitive match on email and password; both required.

        Raises :class:`~clinic_sync.backend.StoreError` when the staff
        collection cannot be read.
        """
        if not email or not password:
            return False

        candidates = await self._store.find(STAFF, "email", email)
        user = next(
            (
                staff
                for staff in candidates
                if staff.get("email") == email and staff.get("password") == password
            ),
            None,
        )
        if user is None:
            logger.info("Login rejected for %s", email)
            return False

        self._persist(user)
        logger.info("Staff %s logged in", user["id"])
        return True

    def logout(self, reason: LogoutReason = LogoutReason.MANUAL, *, notify: bool = True) -> bool:
        """Clear the session. Returns False when there was nothing to clear."""
        was_authenticated = self.is_authenticated
        staff_id = self._current_user.get("id") if self._current_user else None

        self._current_user = None
        self._password_version = None
        self._session_expiration_ms = None
        self._clear_storage()

        if not was_authenticated:
            return False

        logger.info("Staff %s logged out (%s)", staff_id, reason.value)
        if notify:
            self._announce(reason)
        return True

    def _announce(self, reason: LogoutReason) -> None:
        if reason not in _LOGOUT_MESSAGES:
            return
        title, description, duration = _LOGOUT_MESSAGES[reason]
        self._notifier.notify(
            Notification(
                title=title,
                description=description,
                variant="destructive",
                duration_ms=duration,
                cause=reason.value,
                redirect_to=LOGIN_ROUTE,
            )
        )

    def _discard_stored_session(self, reason: LogoutReason) -> None:
        # No user is loaded yet while restoring, but the stale session still
        # has to be cleared and explained.
        logger.info("Discarding stored session for %s (%s)", self._storage.get(STAFF_ID), reason.value)
        self._clear_storage()
        self._announce(reason)

    def is_expired(self) -> bool:
        expiration = self.session_expiration_ms
        return expiration is None or self._now_ms() >= expiration

    def check_expiration(self) -> bool:
        """True while the session is valid; logs out once it has expired."""
        if not self.is_authenticated:
            return False
        if self.is_expired():
            self.logout(LogoutReason.SESSION_EXPIRED)
            return False
        return True

    def verify_record(self, staff: Record | None) -> LogoutReason | None:
        """Compare the live staff record with the session; None when unchanged."""
        if staff is None:
            return LogoutReason.ACCOUNT_DELETED
        stored = self._password_version or self._storage.get(PASSWORD_VERSION)
        if stored != password_fingerprint(staff.get("password")):
            return LogoutReason.PASSWORD_CHANGED
        if self._current_user is not None and self._current_user.get("email") != staff.get("email"):
            return LogoutReason.ACCOUNT_INFO_CHANGED
        return None

    def update_current_user(self, staff: Record) -> None:
        if self._current_user is not None and self._current_user.get("id") == staff.get("id"):
            self._current_user = _public_view(staff)

    async def restore(self) -> bool:
        """Rebuild the session from storage, e.g. after a restart."""
        if self._storage.get(IS_LOGGED_IN) != "true":
            return False
        staff_id = self._storage.get(STAFF_ID)
        if not staff_id:
            return False

        if self.is_expired():
            self._discard_stored_session(LogoutReason.SESSION_EXPIRED)
            return False

        try:
            staff = find_by_id(await self._store.get(STAFF), staff_id)
        except Exception as exc:
            logger.warning("Could not restore session for %s: %s", staff_id, exc)
            return False

        if staff is None:
            self._discard_stored_session(LogoutReason.ACCOUNT_DELETED)
            return False
        if self._storage.get(STAFF_DATA_VERSION) != data_version_fingerprint(staff):
            self._discard_stored_session(LogoutReason.DATA_VERSION_CHANGED)
            return False
        if self._storage.get(PASSWORD_VERSION) != password_fingerprint(staff.get("password")):
            self._discard_stored_session(LogoutReason.PASSWORD_CHANGED)
            return False

        self._current_user = _public_view(staff)
        self._password_version = self._storage.get(PASSWORD_VERSION)
        self._session_expiration_ms = self.session_expiration_ms
        logger.info("Restored session for staff %s", staff_id)
        return True

    async def refresh(self) -> bool:
        """Re-validate against the live staff record and extend the session."""
        if not self.check_expiration():
            return False
        staff_id = self._current_user["id"] if self._current_user else ""
        try:
            staff = find_by_id(await self._store.get(STAFF), staff_id)
        except Exception as exc:
            logger.warning("Session refresh skipped, staff fetch failed: %s", exc)
            return False

        reason = self.verify_record(staff)
        if reason is not None or staff is None:
            self.logout(reason or LogoutReason.ACCOUNT_DELETED)
            return False

        self._persist(staff)
        logger.info("Session extended for staff %s", staff_id)
        return True

    def get_session(self) -> dict[str, Any]:
        expiration = self.session_expiration_ms
        return {
            "isLoggedIn": self.is_authenticated,
            "currentUser": self._current_user,
            "sessionExpiration": expiration,
            "expiresInSeconds": (
                max(0.0, (expiration - self._now_ms()) / 1000) if expiration is not None else None
            ),
            "isAdmin": self.is_admin,
        }
