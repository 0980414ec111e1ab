"""
Remote collection store contract and an in-memory document store.

Both the document database and the sheets API route are addressed the same
way: by collection name, reading whole arrays and writing single records.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Protocol

from .models import APPOINTMENTS, CUSTOMERS, INVOICES, SERVICES, STAFF, Record, normalize_collection

logger = logging.getLogger(__name__)


class StoreError(RuntimeError):
    """Raised when a collection store call fails.

    ``store_unavailable`` marks transport-level failures that are worth a
    retry; ``store_rejected`` and ``not_found`` are answers from the store.
    """

    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message


class CollectionStore(Protocol):
    async def get(self, collection: str) -> list[Record]: ...

    async def find(self, collection: str, field: str, value: Any) -> list[Record]: ...

    async def append(self, collection: str, record: Record) -> Record: ...

    async def update(self, collection: str, record: Record) -> Record: ...

    async def delete(self, collection: str, record_id: str) -> None: ...

    async def write(self, collection: str, records: list[Record]) -> None: ...

    def get_health(self) -> dict[str, Any]: ...


DEMO_DATA: dict[str, list[Record]] = {
    STAFF: [
        {
            "id": "STAFF001", "name": "Bs. Minh", "role": "admin",
            "avatarUrl": "https://placehold.co/100x100.png", "phone": "090-123-4567",
            "email": "minh.bs@clinic.com", "password": "minh123", "licenseNumber": "CCHN00123/HCM",
        },
        {
            "id": "STAFF002", "name": "Bs. Hải", "role": "Chuyên viên",
            "avatarUrl": "https://placehold.co/100x100.png", "phone": "090-234-5678",
            "email": "hai.bs@clinic.com", "password": "hai123",
        },
        {
            "id": "STAFF005", "name": "Đd. Hạnh", "role": "Kỹ thuật viên",
            "avatarUrl": "https://placehold.co/100x100.png", "phone": "090-567-8901",
            "email": "hanh.dd@clinic.com", "password": "hanh123", "licenseNumber": "CCHN-DD00456/DNA",
        },
    ],
    CUSTOMERS: [
        {
            "id": "C1", "name": "Nguyễn Văn An", "birthYear": 1985, "gender": "Nam",
            "address": "12 Lê Lợi, Q1", "phone": "0901234567", "lastVisit": "2024-07-20",
            "avatarUrl": "https://placehold.co/100x100.png", "tongChiTieu": 1500000,
        },
        {
            "id": "C2", "name": "Trần Thị Bình", "birthYear": 1992, "gender": "Nữ",
            "address": "45 Hai Bà Trưng, Q3", "phone": "0912345678", "lastVisit": "2024-07-25",
            "avatarUrl": "https://placehold.co/100x100.png", "tongChiTieu": 820000,
        },
    ],
    APPOINTMENTS: [
        {
            "id": "A1", "patientName": "Nguyễn Văn An", "doctorName": "Bs. Minh",
            "schedulerName": "Đd. Hạnh", "date": "2024-07-30", "startTime": "09:00",
            "endTime": "09:30", "status": "scheduled",
        },
    ],
    SERVICES: [
        {
            "id": "S1", "name": "Massage thư giãn", "category": "Massage",
            "description": "Massage toàn thân 60 phút", "duration": 60, "price": 450000,
            "requiredStaff": "Kỹ thuật viên", "isActive": True,
        },
    ],
    INVOICES: [
        {
            "id": "INV1", "patientName": "Nguyễn Văn An", "date": "2024-07-20",
            "items": [{"name": "Massage thư giãn", "quantity": 1, "price": 450000}],
            "amount": 450000, "status": "paid",
        },
    ],
}


class InMemoryCollectionStore:
    """Document-style store kept in process memory.

    Records are deep-copied in and out so callers never share mutable state
    with the store.
    """

    def __init__(self, seed: dict[str, list[Record]] | None = None):
        self._collections: dict[str, list[Record]] = {}
        for name, records in (seed or {}).items():
            self._collections[normalize_collection(name)] = copy.deepcopy(records)
        self._reads = 0
        self._writes = 0

    def _records(self, collection: str) -> list[Record]:
        return self._collections.setdefault(normalize_collection(collection), [])

    async def get(self, collection: str) -> list[Record]:
        self._reads += 1
        return copy.deepcopy(self._records(collection))

    async def find(self, collection: str, field: str, value: Any) -> list[Record]:
        self._reads += 1
        return [copy.deepcopy(r) for r in self._records(collection) if r.get(field) == value]

    async def append(self, collection: str, record: Record) -> Record:
        records = self._records(collection)
        if not record.get("id"):
            raise StoreError("store_rejected", "record id is required")
        if any(r.get("id") == record["id"] for r in records):
            raise StoreError("store_rejected", f"duplicate id '{record['id']}' in {collection}")
        self._writes += 1
        records.append(copy.deepcopy(record))
        return copy.deepcopy(record)

    async def update(self, collection: str, record: Record) -> Record:
        records = self._records(collection)
        record_id = record.get("id")
        if not record_id:
            raise StoreError("store_rejected", "record id is required to update")
        for index, existing in enumerate(records):
            if existing.get("id") == record_id:
                self._writes += 1
                records[index] = copy.deepcopy(record)
                return copy.deepcopy(record)
        raise StoreError("not_found", f"{collection} record '{record_id}' not found")

    async def delete(self, collection: str, record_id: str) -> None:
        if not record_id:
            raise StoreError("store_rejected", "record id is required to delete")
        records = self._records(collection)
        remaining = [r for r in records if r.get("id") != record_id]
        if len(remaining) == len(records):
            raise StoreError("not_found", f"{collection} record '{record_id}' not found")
        self._writes += 1
        records[:] = remaining

    async def write(self, collection: str, records: list[Record]) -> None:
        self._writes += 1
        self._collections[normalize_collection(collection)] = copy.deepcopy(records)

    def get_health(self) -> dict[str, Any]:
        return {
            "backend": "memory",
            "collections": {name: len(records) for name, records in self._collections.items()},
            "reads": self._reads,
            "writes": self._writes,
        }
