"""
Tests for Stripe Checkout Session creation.
"""

from unittest.mock import Mock

import pytest
import stripe

from pipeline.errors import (
    DocumentNotFoundError,
    InvalidRequestError,
    PersistenceError,
    TransitionConflictError,
)
from schemas.documents import InvoiceStatus, LineItem
from services.checkout import CheckoutService
from storage.document_store import AuditEventType


@pytest.fixture
def stripe_client():
    client = Mock()
    client.checkout.Session.create.return_value = {
        "id": "cs_test_123",
        "url": "https://checkout.stripe.com/c/pay/cs_test_123",
    }
    return client


@pytest.fixture
def checkout(store, audit_log, stripe_client):
    return CheckoutService(
        store=store,
        audit_log=audit_log,
        stripe_client=stripe_client,
        api_key="sk_test_key",
        currency="idr",
    )


class TestCreateCheckout:
    """Session parameters and results."""

    @pytest.mark.asyncio
    async def test_creates_session(self, checkout, stripe_client, store, invoice):
        await store.save_document(invoice)

        result = await checkout.create_checkout(invoice.id, origin="https://app.example.com/")

        assert result.session_id == "cs_test_123"
        assert result.checkout_url.startswith("https://checkout.stripe.com")
        assert result.amount == 120000
        assert result.currency == "idr"

        kwargs = stripe_client.checkout.Session.create.call_args.kwargs
        assert kwargs["api_key"] == "sk_test_key"
        assert kwargs["mode"] == "payment"
        assert kwargs["line_items"][0]["price_data"]["unit_amount"] == 12000000
        assert kwargs["success_url"] == f"https://app.example.com/invoice/public/{invoice.id}?payment=success"
        assert kwargs["metadata"]["invoice_id"] == invoice.id
        assert kwargs["metadata"]["user_id"] == "user-1"
        assert kwargs["metadata"]["invoice_number"] == "INV-2024-001"
        assert kwargs["metadata"]["client_name"] == "PT Maju Jaya"
        assert kwargs["idempotency_key"] == f"checkout_{invoice.id}_v1"

    @pytest.mark.asyncio
    async def test_audited(self, checkout, store, audit_log, invoice):
        await store.save_document(invoice)

        result = await checkout.create_checkout(invoice.id)

        trail = await audit_log.get_by_correlation_id(result.correlation_id)
        assert trail[0].event_type == AuditEventType.CHECKOUT_CREATED
        assert trail[0].new_state == {"session_id": "cs_test_123"}


class TestCheckoutErrors:
    """Unpayable invoices and Stripe failures."""

    @pytest.mark.asyncio
    async def test_unknown_invoice(self, checkout):
        with pytest.raises(DocumentNotFoundError):
            await checkout.create_checkout("missing")

    @pytest.mark.asyncio
    async def test_paid_invoice(self, checkout, stripe_client, store, invoice):
        await store.save_document(invoice.with_status(InvoiceStatus.PAID))

        with pytest.raises(TransitionConflictError):
            await checkout.create_checkout(invoice.id)
        stripe_client.checkout.Session.create.assert_not_called()

    @pytest.mark.asyncio
    async def test_zero_total(self, checkout, store, invoice):
        free = invoice.model_copy(update={
            "items": [LineItem(description="Gift", quantity=1, unit_price=0)],
            "discount": 0,
            "tax": 0,
        })
        await store.save_document(free)

        with pytest.raises(InvalidRequestError):
            await checkout.create_checkout(free.id)

    @pytest.mark.asyncio
    async def test_stripe_error(self, checkout, stripe_client, store, invoice):
        await store.save_document(invoice)
        stripe_client.checkout.Session.create.side_effect = stripe.StripeError("card declined")

        with pytest.raises(PersistenceError):
            await checkout.create_checkout(invoice.id)
