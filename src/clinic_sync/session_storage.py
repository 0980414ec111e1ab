"""
Key-value session storage shared between processes of one user.

Mirrors browser local storage: string values, no transactions, and change
events delivered to every *other* handle on the same storage area.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

IS_LOGGED_IN = "isLoggedIn"
STAFF_ID = "staffId"
SESSION_EXPIRATION = "sessionExpiration"
PASSWORD_VERSION = "passwordVersion"
STAFF_DATA_VERSION = "staffDataVersion"

SESSION_KEYS = (IS_LOGGED_IN, STAFF_ID, SESSION_EXPIRATION, PASSWORD_VERSION, STAFF_DATA_VERSION)

DEFAULT_SESSION_FILE = Path(
    os.getenv(
        "CLINIC_SYNC_SESSION_FILE",
        str(Path(tempfile.gettempdir()) / "clinic-sync-session.json"),
    )
)


@dataclass(frozen=True)
class StorageChange:
    key: str
    old_value: str | None
    new_value: str | None


StorageListener = Callable[[StorageChange], None]


class _MemoryArea:
    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.listeners: list[tuple[object, StorageListener]] = []


class MemorySessionStorage:
    """In-process storage; handles opened with :meth:`open_peer` share one area."""

    def __init__(self, area: _MemoryArea | None = None):
        self._area = area or _MemoryArea()

    def open_peer(self) -> MemorySessionStorage:
        """Another handle on the same area, like a second browser tab."""
        return MemorySessionStorage(self._area)

    def _broadcast(self, change: StorageChange) -> None:
        for owner, listener in list(self._area.listeners):
            if owner is self:
                continue
            try:
                listener(change)
            except Exception:
                logger.exception("Storage listener failed for key %s", change.key)

    def get(self, key: str) -> str | None:
        return self._area.values.get(key)

    def set(self, key: str, value: str) -> None:
        old = self._area.values.get(key)
        self._area.values[key] = value
        if old != value:
            self._broadcast(StorageChange(key, old, value))

    def remove(self, key: str) -> None:
        old = self._area.values.pop(key, None)
        if old is not None:
            self._broadcast(StorageChange(key, old, None))

    def keys(self) -> list[str]:
        return list(self._area.values)

    def subscribe(self, listener: StorageListener) -> Callable[[], None]:
        entry = (self, listener)
        self._area.listeners.append(entry)

        def _unsubscribe() -> None:
            try:
                self._area.listeners.remove(entry)
            except ValueError:
                pass

        return _unsubscribe

    def poll(self) -> list[StorageChange]:
        # Peers are notified synchronously; nothing to poll.
        return []


class FileSessionStorage:
    """
    JSON-file storage shared by every process pointing at the same path.

    Other processes' writes are discovered by :meth:`poll`, which diffs the
    file against the last state this handle saw and notifies listeners.
    """

    def __init__(self, path: Path | str = DEFAULT_SESSION_FILE):
        self._path = Path(path)
        self._listeners: list[StorageListener] = []
        self._seen = self._read()

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> dict[str, str]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            logger.warning("Could not read session file %s: %s", self._path, exc)
            return {}
        try:
            parsed = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring corrupt session file %s", self._path)
            return {}
        if not isinstance(parsed, dict):
            return {}
        return {str(k): str(v) for k, v in parsed.items()}

    def _write(self, values: dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".session-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(values, handle)
            os.replace(tmp_name, self._path)
        except Exception:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def get(self, key: str) -> str | None:
        return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        values = self._read()
        values[key] = value
        self._write(values)
        self._seen[key] = value

    def remove(self, key: str) -> None:
        values = self._read()
        if key in values:
            del values[key]
            self._write(values)
        self._seen.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._read())

    def subscribe(self, listener: StorageListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    def poll(self) -> list[StorageChange]:
        current = self._read()
        previous = self._seen
        self._seen = current
        changes = [
            StorageChange(key, previous.get(key), current.get(key))
            for key in sorted(set(previous) | set(current))
            if previous.get(key) != current.get(key)
        ]
        for change in changes:
            for listener in list(self._listeners):
                try:
                    listener(change)
                except Exception:
                    logger.exception("Storage listener failed for key %s", change.key)
        return changes
