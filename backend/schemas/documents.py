# schemas/documents.py
# ============================================================================
# BILLING RECONCILIATION SERVICE — DOCUMENT SCHEMAS
# ============================================================================
# Invoices, quotes, their line items, and the rows appended when a document
# is reconciled (payment records, notifications).
# ============================================================================

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union
import uuid

from pydantic import BaseModel, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# SECTION 1: ENUMS
# ============================================================================

class DocumentKind(str, Enum):
    INVOICE = "invoice"
    QUOTE = "quote"


class InvoiceStatus(str, Enum):
    UNPAID = "Unpaid"
    PAID = "Paid"


class QuoteStatus(str, Enum):
    PENDING = "Pending"
    ACCEPTED = "Accepted"
    REJECTED = "Rejected"


DocumentStatus = Union[InvoiceStatus, QuoteStatus]

STATUS_ENUMS: dict[DocumentKind, type[Enum]] = {
    DocumentKind.INVOICE: InvoiceStatus,
    DocumentKind.QUOTE: QuoteStatus,
}

# Localized labels still sent by older clients
STATUS_LABELS: dict[str, DocumentStatus] = {
    "lunas": InvoiceStatus.PAID,
    "belum lunas": InvoiceStatus.UNPAID,
    "diterima": QuoteStatus.ACCEPTED,
    "ditolak": QuoteStatus.REJECTED,
    "terkirim": QuoteStatus.PENDING,
}


def parse_status(kind: DocumentKind, value) -> Optional[DocumentStatus]:
    """
    Map a boundary status value onto the closed enum for `kind`.

    Accepts enum members, canonical labels in any case and the localized
    labels in STATUS_LABELS. Returns None when the value does not belong to
    the kind's enum.
    """
    enum_cls = STATUS_ENUMS[DocumentKind(kind)]
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, Enum):
        value = value.value
    if not isinstance(value, str):
        return None

    normalized = value.strip().lower()
    for member in enum_cls:
        if member.value.lower() == normalized:
            return member

    mapped = STATUS_LABELS.get(normalized)
    if isinstance(mapped, enum_cls):
        return mapped
    return None


# ============================================================================
# SECTION 2: DOCUMENTS
# ============================================================================

class LineItem(BaseModel):
    """One billed line. Identity is its position in the parent document."""
    description: str = ""
    quantity: float = Field(default=0, ge=0)
    unit: Optional[str] = None
    unit_price: float = Field(default=0, ge=0)


class Document(BaseModel):
    """An invoice or a quote. Only `status` is written by reconciliation."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: DocumentKind
    number: str
    user_id: str
    client_name: str = ""
    items: list[LineItem] = Field(default_factory=list)
    discount: float = Field(default=0, ge=0)
    tax: float = Field(default=0, ge=0)
    status: DocumentStatus

    due_date: Optional[datetime] = None      # invoices
    valid_until: Optional[datetime] = None   # quotes

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 1

    @model_validator(mode="before")
    @classmethod
    def _coerce_status(cls, data):
        if isinstance(data, dict) and "kind" in data and "status" in data:
            status = parse_status(data["kind"], data["status"])
            if status is None:
                raise ValueError(
                    f"status {data['status']!r} is not valid for a {DocumentKind(data['kind']).value}"
                )
            data = {**data, "status": status}
        return data

    @field_validator("due_date", "valid_until", "created_at", "updated_at")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        # Naive timestamps are UTC; the sweeps compare against aware datetimes
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def link(self) -> str:
        return f"/{self.kind.value}/{self.id}"

    def with_status(self, status: DocumentStatus) -> "Document":
        """Immutable status change"""
        return self.model_copy(update={
            "status": status,
            "updated_at": utcnow(),
            "version": self.version + 1,
        })


# ============================================================================
# SECTION 3: RECONCILIATION RECORDS
# ============================================================================

class PaymentRecord(BaseModel):
    """Created exactly once per reconciled payment."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    invoice_id: str
    user_id: str
    amount: float
    payment_date: datetime
    notes: str
    status: InvoiceStatus = InvoiceStatus.PAID
    gateway: str
    gateway_reference: str
    created_at: datetime = Field(default_factory=utcnow)


class Notification(BaseModel):
    """In-app message for the document owner."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    message: str
    link: str
    is_read: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class Workflow(BaseModel):
    """User-enabled automation rule, e.g. overdue-invoice reminders."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    trigger_type: str
    action_type: str = "send_internal_notification"
    is_active: bool = True
