# schemas/events.py
# ============================================================================
# BILLING RECONCILIATION SERVICE — GATEWAY EVENT SCHEMAS
# ============================================================================
# Typed form of an authenticated payment gateway callback, independent of
# which gateway delivered it.
# ============================================================================

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class GatewayEventKind(str, Enum):
    PAYMENT_COMPLETED = "payment.completed"
    OTHER = "other"


class PaymentCorrelation(BaseModel):
    """Identifiers linking a gateway event to one invoice and its owner."""
    document_id: Optional[str] = None
    user_id: Optional[str] = None
    document_number: Optional[str] = None
    client_name: Optional[str] = None
    amount: Optional[float] = None


class PaymentEvent(BaseModel):
    """An authenticated gateway callback."""
    gateway: str
    kind: GatewayEventKind
    raw_type: str
    event_id: Optional[str] = None
    reference: Optional[str] = None  # checkout session / transaction id
    occurred_at: Optional[datetime] = None
    correlation: PaymentCorrelation = Field(default_factory=PaymentCorrelation)

    # Correlation fields this gateway must deliver itself; the rest can be
    # completed from the stored invoice.
    required_fields: tuple[str, ...] = ("document_id", "amount")

    @property
    def is_payment_completed(self) -> bool:
        return self.kind == GatewayEventKind.PAYMENT_COMPLETED

    def missing_fields(self) -> list[str]:
        missing = [
            name for name in self.required_fields
            if getattr(self.correlation, name) in (None, "")
        ]
        if not self.event_id:
            missing.append("event_id")
        if not self.reference:
            missing.append("reference")
        if self.occurred_at is None:
            missing.append("occurred_at")
        return missing
