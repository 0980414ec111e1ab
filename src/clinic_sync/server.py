"""
MCP server exposing the clinic data layer: cached collection reads,
optimistic writes and the staff session.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from mcp.server.fastmcp import FastMCP

from . import migration
from .auth import LogoutReason
from .backend import DEMO_DATA, StoreError
from .data_context import ClinicData, build_store
from .fetcher import FetchResult
from .models import normalize_collection
from .session_storage import FileSessionStorage

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(server: FastMCP) -> AsyncIterator[None]:
    """Restore the stored session, preload collections, start background checks."""
    try:
        await get_clinic().start()
    except Exception as exc:
        logger.warning("Clinic data init failed, starting degraded: %s", exc)
    try:
        yield
    finally:
        await _shutdown()


mcp = FastMCP(
    "Clinic Sync",
    instructions=(
        "Clinic data server. "
        "Collection reads are served from a short-lived cache and fall back to "
        "the last known data when the backend is unreachable. "
        "Writes are applied to the cache first and rolled back if the backend "
        "rejects them. Staff sessions expire and are re-checked periodically."
    ),
    lifespan=_lifespan,
)

_clinic: ClinicData | None = None


def get_clinic() -> ClinicData:
    global _clinic
    if _clinic is None:
        _clinic = ClinicData(build_store(), storage=FileSessionStorage())
    return _clinic


async def _shutdown() -> None:
    global _clinic
    if _clinic is not None:
        await _clinic.stop()
        _clinic = None


def _fetch_payload(result: FetchResult) -> dict[str, Any]:
    return {
        "collection": result.collection,
        "records": result.data,
        "totalCount": len(result.data),
        "state": result.state.value,
        "error": str(result.error) if result.error else None,
        "isStale": result.is_stale,
        "fromCache": result.from_cache,
    }


def _error_payload(exc: Exception) -> dict[str, Any]:
    if isinstance(exc, StoreError):
        return {"ok": False, "code": exc.code, "error": exc.message}
    return {"ok": False, "code": "invalid_request", "error": str(exc)}


@mcp.tool()
async def list_records(collection: str, force: bool = False) -> dict[str, Any]:
    """List every record of a collection.

    Args:
        collection: One of customers (or patients), appointments, services,
            medications, invoices, staff, medicalRecords, prescriptions.
        force: Skip the cache and read from the backend.

    Returns:
        dict with "records", "totalCount", "state" (idle/loading/ready/error),
        "error", "isStale" and "fromCache". On error "records" holds the last
        known data.
    """
    return _fetch_payload(await get_clinic().list_records(collection, force=force))


@mcp.tool()
async def get_record(collection: str, id: str) -> dict[str, Any] | None:
    """Retrieve one record by id, or None if it does not exist."""
    return await get_clinic().get_record(collection, id)


def _records_payload(records: list[dict[str, Any]]) -> dict[str, Any]:
    return {"records": records, "totalCount": len(records)}


@mcp.tool()
async def search_records(collection: str, query: str) -> dict[str, Any]:
    """Find records containing the query in any text field, ignoring case."""
    return _records_payload(await get_clinic().search_records(collection, query))


@mcp.tool()
async def filter_records(collection: str, filters: dict[str, Any]) -> dict[str, Any]:
    """Find records whose fields equal every given value, e.g. {"status": "paid"}."""
    return _records_payload(await get_clinic().filter_records(collection, filters))


@mcp.tool()
async def today_appointments(date: str | None = None) -> dict[str, Any]:
    """List appointments on a day (YYYY-MM-DD), today by default."""
    return _records_payload(await get_clinic().today_appointments(date))


@mcp.tool()
async def customer_appointments(customer_id: str) -> dict[str, Any]:
    """List the appointments booked for one customer."""
    return _records_payload(await get_clinic().customer_appointments(customer_id))


@mcp.tool()
async def customer_invoices(customer_id: str) -> dict[str, Any]:
    """List the invoices issued to one customer."""
    return _records_payload(await get_clinic().customer_invoices(customer_id))


@mcp.tool()
async def add_record(collection: str, record: dict[str, Any]) -> dict[str, Any]:
    """Create a record. An id is generated when the record has none.

    Returns:
        dict with "ok" and the confirmed "record", or "code"/"error" when the
        backend rejected the write (the cache is rolled back).
    """
    try:
        saved = await get_clinic().add_record(collection, record)
    except (StoreError, ValueError) as exc:
        return _error_payload(exc)
    return {"ok": True, "record": saved}


@mcp.tool()
async def update_record(collection: str, record: dict[str, Any]) -> dict[str, Any]:
    """Replace a record (matched by its "id") with the given fields."""
    try:
        saved = await get_clinic().update_record(collection, record)
    except (StoreError, ValueError) as exc:
        return _error_payload(exc)
    return {"ok": True, "record": saved}


@mcp.tool()
async def delete_record(collection: str, id: str) -> dict[str, Any]:
    """Delete a record by id."""
    try:
        await get_clinic().delete_record(collection, id)
    except (StoreError, ValueError) as exc:
        return _error_payload(exc)
    return {"ok": True, "id": id}


@mcp.tool()
async def refetch(collection: str) -> dict[str, Any]:
    """Force a backend read of one collection and refresh its cache entry."""
    return _fetch_payload(await get_clinic().refetch(collection))


@mcp.tool()
async def refetch_all() -> dict[str, Any]:
    """Force a backend read of every loaded collection, concurrently."""
    results = await get_clinic().refetch_all()
    return {name: _fetch_payload(result) for name, result in results.items()}


@mcp.tool()
async def focus_regained() -> dict[str, Any]:
    """Signal that the user is back; collections older than the stale time refetch."""
    delivered = await get_clinic().focus_regained()
    return {"listeners": delivered}


@mcp.tool()
async def login(email: str, password: str) -> dict[str, Any]:
    """Log a staff member in. Email and password must match exactly.

    Returns:
        dict with "ok" and the session; "code"/"error" when the staff list
        could not be read.
    """
    clinic = get_clinic()
    try:
        ok = await clinic.session.login(email, password)
    except StoreError as exc:
        return _error_payload(exc)
    return {"ok": ok, "session": clinic.session.get_session()}


@mcp.tool()
def logout() -> dict[str, Any]:
    """End the current staff session in every process sharing it."""
    clinic = get_clinic()
    was_logged_in = clinic.session.logout(LogoutReason.MANUAL)
    return {"ok": True, "wasLoggedIn": was_logged_in}


@mcp.tool()
async def refresh_session() -> dict[str, Any]:
    """Re-validate the session against the staff record and extend its expiration."""
    clinic = get_clinic()
    ok = await clinic.session.refresh()
    return {"ok": ok, "session": clinic.session.get_session()}


@mcp.tool()
def get_session() -> dict[str, Any]:
    """Return the current session: isLoggedIn, currentUser, sessionExpiration, isAdmin."""
    clinic = get_clinic()
    clinic.session.check_expiration()
    return clinic.session.get_session()


@mcp.tool()
def poll_notifications() -> list[dict[str, Any]]:
    """Return and clear pending notifications (forced logouts, failed writes)."""
    return [notification.to_dict() for notification in get_clinic().notifier.drain()]


@mcp.tool()
def get_cache_stats() -> dict[str, Any]:
    """Return cache size, hit rate and per-entry age, ttl and version."""
    return get_clinic().get_cache_stats()


@mcp.tool()
def clear_cache() -> dict[str, Any]:
    """Drop every cache entry; the next reads go to the backend."""
    get_clinic().clear_cache()
    return {"ok": True}


@mcp.tool()
def get_health() -> dict[str, Any]:
    """Return backend, cache, fetcher, mutation and auth-monitor health."""
    return get_clinic().get_health()


async def _close_store(store: Any) -> None:
    close = getattr(store, "close", None)
    if close is not None:
        await close()


@mcp.tool()
async def migrate_collections(
    target_backend: str = "sheets", collections: list[str] | None = None
) -> dict[str, Any]:
    """Copy collections from the active backend into another backend.

    Each target collection is overwritten with the source records; empty
    source collections are skipped. One failing collection does not stop
    the others.

    Args:
        target_backend: memory or sheets.
        collections: Collection names; defaults to customers, appointments,
            medications, invoices, staff and medicalRecords.
    """
    try:
        names = [normalize_collection(name) for name in collections or migration.MIGRATED_COLLECTIONS]
        target = build_store(target_backend)
    except ValueError as exc:
        return _error_payload(exc)
    try:
        summary = await migration.migrate_all(get_clinic().store, target, names)
    finally:
        await _close_store(target)
    return {"ok": summary.failed == 0, **summary.to_dict()}


@mcp.tool()
async def verify_migration(
    target_backend: str = "sheets", collections: list[str] | None = None
) -> dict[str, Any]:
    """Compare record counts and ids between the active backend and another one."""
    try:
        names = [normalize_collection(name) for name in collections or migration.MIGRATED_COLLECTIONS]
        target = build_store(target_backend)
    except ValueError as exc:
        return _error_payload(exc)
    try:
        return await migration.verify_migration(get_clinic().store, target, names)
    finally:
        await _close_store(target)


@mcp.tool()
async def seed_collection(collection: str) -> dict[str, Any]:
    """Fill a collection with the demo records when it is empty, then reload it."""
    clinic = get_clinic()
    try:
        name = normalize_collection(collection)
        records = await migration.seed_if_empty(clinic.store, name, DEMO_DATA.get(name, []))
    except (StoreError, ValueError) as exc:
        return _error_payload(exc)
    await clinic.refetch(name)
    return {"ok": True, "collection": name, "totalCount": len(records)}


def main() -> None:
    mcp.run()
