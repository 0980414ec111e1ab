"""
HTTP client for the clinic sheets API route.

Talks to ``/api/sheets`` with the collection-name contract used by the web
app (GET to read, POST to append or overwrite, PUT to update a row, DELETE to
remove one). The route names the customers sheet ``patients`` and stores
only the columns listed for each collection, so outgoing names and rows are
mapped onto that contract.

GET, PUT and DELETE are retried once on a fresh connection after a transport
failure or a 5xx answer. POST appends and overwrites are retried only when
the connection was never established. 4xx answers are never retried.
"""

from __future__ import annotations

import json
import logging
import os
import time
from typing import Any

import httpx

from .backend import StoreError
from .models import CUSTOMERS, Record, normalize_collection, project_record

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "http://localhost:9002/api/sheets"

# Collection names as the sheets route spells them.
SHEETS_COLLECTION_NAMES = {CUSTOMERS: "patients"}

IDEMPOTENT_METHODS = frozenset({"GET", "PUT", "DELETE"})


def sheets_collection_name(collection: str) -> str:
    name = normalize_collection(collection)
    return SHEETS_COLLECTION_NAMES.get(name, name)


class SheetsApiStore:
    """Async collection store backed by the sheets API route."""

    def __init__(
        self,
        url: str | None = None,
        headers: dict[str, str] | None = None,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._url = url or os.getenv("CLINIC_SYNC_API_URL", DEFAULT_API_URL)
        self._headers = headers or self._parse_headers_from_env()
        self._timeout_seconds = timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

        self._failure_count = 0
        self._last_error: str | None = None
        self._last_failure_at: float | None = None
        self._last_success_at: float | None = None

    @staticmethod
    def _parse_headers_from_env() -> dict[str, str] | None:
        raw = os.getenv("CLINIC_SYNC_API_HEADERS")
        if not raw:
            return None
        try:
            parsed = json.loads(raw)
            if isinstance(parsed, dict):
                return {str(k): str(v) for k, v in parsed.items()}
        except ValueError:
            pass
        logger.warning("Ignoring invalid CLINIC_SYNC_API_HEADERS value")
        return None

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers={"Content-Type": "application/json", **(self._headers or {})},
                timeout=self._timeout_seconds,
                transport=self._transport,
            )
        return self._client

    async def _reset_client(self) -> None:
        client = self._client
        self._client = None
        if client is not None:
            try:
                await client.aclose()
            except Exception as exc:
                logger.debug("Sheets API client cleanup failed: %s", exc)

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return f"HTTP {response.status_code}"
        if isinstance(body, dict) and body.get("error"):
            details = body.get("details")
            return f"{body['error']}: {details}" if details else str(body["error"])
        return f"HTTP {response.status_code}"

    def _record_failure(self, exc: Exception) -> None:
        self._failure_count += 1
        self._last_failure_at = time.time()
        self._last_error = f"{exc.__class__.__name__}: {exc}"
        logger.warning("Sheets API call failed (%s): %s", exc.__class__.__name__, exc)

    def _record_success(self) -> None:
        self._failure_count = 0
        self._last_error = None
        self._last_success_at = time.time()

    async def _request(
        self,
        method: str,
        *,
        params: dict[str, str] | None = None,
        body: dict[str, Any] | None = None,
    ) -> Any:
        retryable = method in IDEMPOTENT_METHODS
        for attempt in range(2):
            try:
                response = await self._ensure_client().request(
                    method, self._url, params=params, json=body
                )
            except httpx.HTTPError as exc:
                self._record_failure(exc)
                await self._reset_client()
                # A POST that reached the route may already have written rows.
                never_sent = isinstance(exc, (httpx.ConnectError, httpx.ConnectTimeout))
                if attempt == 1 or not (retryable or never_sent):
                    raise StoreError(
                        "store_unavailable", f"sheets API {method} failed: {exc}"
                    ) from exc
                continue

            if response.status_code >= 500:
                exc = StoreError("store_unavailable", self._error_message(response))
                self._record_failure(exc)
                if attempt == 1 or not retryable:
                    raise exc
                continue
            if response.status_code == 404:
                raise StoreError("not_found", self._error_message(response))
            if response.status_code >= 400:
                raise StoreError("store_rejected", self._error_message(response))

            self._record_success()
            if not response.content:
                return None
            try:
                return response.json()
            except ValueError:
                return {"text": response.text}

        raise StoreError("store_unavailable", "sheets API unavailable")

    async def get(self, collection: str) -> list[Record]:
        name = sheets_collection_name(collection)
        payload = await self._request("GET", params={"collection": name})
        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list):
            raise StoreError("store_rejected", f"sheets API returned no data array for {name}")
        return [row for row in data if isinstance(row, dict)]

    async def find(self, collection: str, field: str, value: Any) -> list[Record]:
        # The route has no server-side filter.
        return [record for record in await self.get(collection) if record.get(field) == value]

    async def append(self, collection: str, record: Record) -> Record:
        payload = await self._request(
            "POST",
            body={
                "collection": sheets_collection_name(collection),
                "data": project_record(collection, record),
                "operation": "append",
            },
        )
        returned = payload.get("data") if isinstance(payload, dict) else None
        if isinstance(returned, dict) and returned.get("id"):
            return returned
        return record

    async def update(self, collection: str, record: Record) -> Record:
        if not record.get("id"):
            raise StoreError("store_rejected", "record id is required to update")
        payload = await self._request(
            "PUT",
            body={
                "collection": sheets_collection_name(collection),
                "data": project_record(collection, record),
                "id": record["id"],
            },
        )
        returned = payload.get("data") if isinstance(payload, dict) else None
        if isinstance(returned, dict) and returned.get("id"):
            return returned
        return record

    async def delete(self, collection: str, record_id: str) -> None:
        if not record_id:
            raise StoreError("store_rejected", "record id is required to delete")
        await self._request(
            "DELETE", params={"collection": sheets_collection_name(collection), "id": record_id}
        )

    async def write(self, collection: str, records: list[Record]) -> None:
        await self._request(
            "POST",
            body={
                "collection": sheets_collection_name(collection),
                "data": [project_record(collection, record) for record in records],
                "operation": "write",
            },
        )

    def get_health(self) -> dict[str, Any]:
        return {
            "backend": "sheets",
            "url": self._url,
            "hasHeaders": self._headers is not None,
            "connected": self._client is not None,
            "failureCount": self._failure_count,
            "lastError": self._last_error,
            "lastFailureAt": self._last_failure_at,
            "lastSuccessAt": self._last_success_at,
        }

    async def close(self) -> None:
        await self._reset_client()
