"""
Shared fixtures: in-memory store, test gateway secrets, signed payload builders.
"""

import hashlib
import hmac
import json
import time
from datetime import datetime, timedelta, timezone

import pytest

from pipeline.authenticator import MidtransEventAuthenticator, StripeEventAuthenticator
from pipeline.reconciliation import ReconciliationCoordinator
from schemas.documents import (
    Document,
    DocumentKind,
    InvoiceStatus,
    LineItem,
    QuoteStatus,
)
from storage.document_store import InMemoryAuditLog, InMemoryDocumentStore

STRIPE_SECRET = "whsec_test_secret"
MIDTRANS_SERVER_KEY = "SB-Mid-server-test-key"


def sign_stripe(payload: bytes, secret: str = STRIPE_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header the way Stripe does"""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.fixture
def stripe_signer():
    return sign_stripe


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def audit_log():
    return InMemoryAuditLog()


@pytest.fixture
def authenticators():
    return {
        "stripe": StripeEventAuthenticator(webhook_secret=STRIPE_SECRET, tolerance=300),
        "midtrans": MidtransEventAuthenticator(server_key=MIDTRANS_SERVER_KEY),
    }


@pytest.fixture
def coordinator(store, audit_log, authenticators):
    return ReconciliationCoordinator(
        store=store,
        audit_log=audit_log,
        authenticators=authenticators,
    )


@pytest.fixture
def invoice():
    """Unpaid invoice totalling 120000 (125000 - 10000 + 5000)"""
    return Document(
        kind=DocumentKind.INVOICE,
        number="INV-2024-001",
        user_id="user-1",
        client_name="PT Maju Jaya",
        items=[
            LineItem(description="Website design", quantity=2, unit="pcs", unit_price=50000),
            LineItem(description="Hosting", quantity=1, unit="month", unit_price=25000),
        ],
        discount=10000,
        tax=5000,
        status=InvoiceStatus.UNPAID,
        due_date=datetime.now(timezone.utc) + timedelta(days=14),
    )


@pytest.fixture
def quote():
    return Document(
        kind=DocumentKind.QUOTE,
        number="Q-2024-007",
        user_id="user-1",
        client_name="CV Sinar",
        items=[LineItem(description="Consulting", quantity=3, unit="hour", unit_price=150000)],
        status=QuoteStatus.PENDING,
        valid_until=datetime.now(timezone.utc) + timedelta(days=30),
    )


@pytest.fixture
def stripe_event():
    """Factory for a raw checkout.session.completed body"""

    def build(
        invoice: Document,
        event_type: str = "checkout.session.completed",
        event_id: str = "evt_test_001",
        session_id: str = "cs_test_001",
        amount_total: int = 12000000,
        payment_status: str = "paid",
        metadata: dict = None,
        created: int = 1700000000,
    ) -> bytes:
        if metadata is None:
            metadata = {
                "invoice_id": invoice.id,
                "user_id": invoice.user_id,
                "invoice_number": invoice.number,
                "client_name": invoice.client_name,
            }
        event = {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": created,
            "data": {
                "object": {
                    "id": session_id,
                    "object": "checkout.session",
                    "amount_total": amount_total,
                    "currency": "idr",
                    "payment_status": payment_status,
                    "metadata": metadata,
                },
            },
        }
        return json.dumps(event).encode("utf-8")

    return build


@pytest.fixture
def midtrans_notification():
    """Factory for a signed Midtrans HTTP notification body"""

    def build(
        invoice: Document,
        transaction_status: str = "settlement",
        fraud_status: str = "accept",
        transaction_id: str = "mt-trx-001",
        gross_amount: str = "120000.00",
        status_code: str = "200",
        server_key: str = MIDTRANS_SERVER_KEY,
        signature_key: str = None,
    ) -> bytes:
        order_id = f"{invoice.id}-1700000000"
        if signature_key is None:
            raw = f"{order_id}{status_code}{gross_amount}{server_key}"
            signature_key = hashlib.sha512(raw.encode()).hexdigest()
        notification = {
            "transaction_time": "2024-03-01 10:15:00",
            "settlement_time": "2024-03-01 10:16:30",
            "transaction_status": transaction_status,
            "transaction_id": transaction_id,
            "status_code": status_code,
            "signature_key": signature_key,
            "payment_type": "bank_transfer",
            "order_id": order_id,
            "gross_amount": gross_amount,
            "fraud_status": fraud_status,
            "currency": "IDR",
            "custom_field1": invoice.id,
        }
        return json.dumps(notification).encode("utf-8")

    return build
