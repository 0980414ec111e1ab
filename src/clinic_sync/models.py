"""
Clinic record shapes and collection metadata.

Records travel through the cache and the stores as plain dicts; the
TypedDicts below document the fields each collection carries.
"""

from __future__ import annotations

import random
import string
import time
from typing import Any, Literal, TypedDict

CUSTOMERS = "customers"
APPOINTMENTS = "appointments"
SERVICES = "services"
MEDICATIONS = "medications"
INVOICES = "invoices"
STAFF = "staff"
MEDICAL_RECORDS = "medicalRecords"
PRESCRIPTIONS = "prescriptions"

# Older sheets name the customers tab "patients".
COLLECTION_ALIASES = {"patients": CUSTOMERS}

Record = dict[str, Any]


class Customer(TypedDict, total=False):
    id: str
    name: str
    birthYear: int
    gender: Literal["Nam", "Nữ", "Male", "Female", "Other"]
    address: str
    phone: str
    lastVisit: str
    avatarUrl: str
    tongChiTieu: float  # lifetime spend
    citizenId: str
    weight: float
    medicalHistory: list[str] | str
    documents: list[dict[str, Any]]
    createdAt: str


class AppointmentService(TypedDict, total=False):
    serviceId: str
    serviceName: str
    quantity: int
    unitPrice: float
    totalPrice: float
    discount: float


class Appointment(TypedDict, total=False):
    id: str
    patientName: str
    doctorName: str
    schedulerName: str
    date: str
    startTime: str
    endTime: str
    status: Literal["scheduled", "completed", "cancelled", "Scheduled", "Completed", "Cancelled"]
    services: list[AppointmentService]
    notes: str


class SpaService(TypedDict, total=False):
    id: str
    name: str
    category: str
    description: str
    duration: int  # minutes
    price: float
    discountPrice: float
    requiredStaff: str | list[str]
    roomType: str
    isActive: bool


class Medication(TypedDict, total=False):
    id: str
    name: str
    activeIngredient: str
    concentration: str
    dosageForm: str
    unit: str
    manufacturer: str
    importPrice: float
    sellPrice: float
    batchNo: str
    expiryDate: str
    stock: int
    status: str


class InvoiceItem(TypedDict):
    name: str
    quantity: int
    price: float


class Invoice(TypedDict, total=False):
    id: str
    patientName: str
    date: str
    items: list[InvoiceItem]
    amount: float
    status: Literal["paid", "pending", "overdue", "Paid", "Pending", "Overdue"]


class Staff(TypedDict, total=False):
    id: str
    name: str
    role: str
    avatarUrl: str
    phone: str
    email: str
    password: str
    licenseNumber: str
    licenseIssueDate: str
    licenseIssuePlace: str
    licenseExpiryDate: str


class MedicalRecord(TypedDict, total=False):
    id: str
    patientId: str
    patientName: str
    appointmentId: str
    date: str
    doctorName: str
    symptoms: str
    diagnosis: str
    treatment: str
    products: str
    nextAppointment: str
    notes: str


# Column order used by the sheets API route for each collection.
COLLECTION_HEADERS: dict[str, list[str]] = {
    CUSTOMERS: [
        "id", "name", "birthYear", "gender", "address", "phone", "citizenId",
        "weight", "lastVisit", "avatarUrl", "medicalHistory", "documents",
    ],
    APPOINTMENTS: [
        "id", "patientName", "doctorName", "date", "startTime", "endTime", "status", "notes",
    ],
    SERVICES: [
        "id", "name", "category", "description", "duration", "price", "discountPrice",
        "requiredStaff", "roomType", "isActive",
    ],
    MEDICATIONS: [
        "id", "name", "activeIngredient", "concentration", "dosageForm", "unit",
        "manufacturer", "manufacturerCountry", "registrationNumber", "supplier",
        "importPrice", "sellPrice", "storageLocation", "minStockThreshold",
        "batchNo", "expiryDate", "stock", "status",
    ],
    INVOICES: ["id", "patientName", "date", "items", "amount", "status"],
    STAFF: [
        "id", "name", "role", "avatarUrl", "phone", "email", "password",
        "licenseNumber", "licenseIssueDate", "licenseIssuePlace", "licenseExpiryDate",
    ],
    MEDICAL_RECORDS: [
        "id", "patientId", "patientName", "appointmentId", "date", "doctorName",
        "symptoms", "diagnosis", "treatment", "prescription", "nextAppointment", "notes",
    ],
    PRESCRIPTIONS: [
        "id", "patientId", "patientName", "patientAge", "patientGender", "patientWeight",
        "patientAddress", "doctorId", "doctorName", "doctorLicense", "medicalRecordId",
        "appointmentId", "date", "diagnosis", "symptoms", "items", "totalCost",
        "doctorNotes", "nextAppointment", "status", "validUntil", "clinicInfo",
        "createdAt", "updatedAt",
    ],
}

KNOWN_COLLECTIONS = frozenset(COLLECTION_HEADERS)


def normalize_collection(name: str) -> str:
    """Resolve aliases and reject unknown collection names."""
    resolved = COLLECTION_ALIASES.get(name, name)
    if resolved not in KNOWN_COLLECTIONS:
        raise ValueError(f"unknown collection '{name}'")
    return resolved


def new_record_id(collection: str) -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"{collection}_{int(time.time() * 1000)}_{suffix}"


def is_record(value: Any) -> bool:
    """True when ``value`` looks like a full record (a mapping carrying an id)."""
    return isinstance(value, dict) and bool(value.get("id"))


def find_by_id(records: list[Record], record_id: str) -> Record | None:
    for record in records:
        if record.get("id") == record_id:
            return record
    return None


def project_record(collection: str, record: Record) -> Record:
    """Keep only the columns the sheet for ``collection`` stores, in header order."""
    headers = COLLECTION_HEADERS[normalize_collection(collection)]
    return {field: record[field] for field in headers if field in record}
