# schemas/__init__.py
from schemas.documents import (
    Document,
    DocumentKind,
    DocumentStatus,
    InvoiceStatus,
    LineItem,
    Notification,
    PaymentRecord,
    QuoteStatus,
    Workflow,
    parse_status,
)
from schemas.events import (
    GatewayEventKind,
    PaymentCorrelation,
    PaymentEvent,
)

__all__ = [
    "Document",
    "DocumentKind",
    "DocumentStatus",
    "InvoiceStatus",
    "LineItem",
    "Notification",
    "PaymentRecord",
    "QuoteStatus",
    "Workflow",
    "parse_status",
    "GatewayEventKind",
    "PaymentCorrelation",
    "PaymentEvent",
]
