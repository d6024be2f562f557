"""
Tests for webhook authentication and event parsing.
"""

import json
import time
from datetime import datetime, timezone

import pytest

from pipeline.authenticator import MidtransEventAuthenticator, StripeEventAuthenticator
from pipeline.errors import AuthenticationError, MalformedEventError
from schemas.events import GatewayEventKind

from conftest import MIDTRANS_SERVER_KEY, STRIPE_SECRET


class TestStripeAuthentication:
    """Stripe-Signature verification over the raw body."""

    def test_valid_signature(self, invoice, stripe_event, stripe_signer):
        payload = stripe_event(invoice)
        auth = StripeEventAuthenticator(webhook_secret=STRIPE_SECRET)

        event = auth.authenticate(payload, stripe_signer(payload))

        assert event.gateway == "stripe"
        assert event.kind == GatewayEventKind.PAYMENT_COMPLETED
        assert event.event_id == "evt_test_001"
        assert event.reference == "cs_test_001"
        assert event.occurred_at == datetime.fromtimestamp(1700000000, tz=timezone.utc)
        assert event.correlation.document_id == invoice.id
        assert event.correlation.amount == 120000
        assert event.missing_fields() == []

    def test_raw_bytes_body_verifies(self, invoice, stripe_event, stripe_signer):
        """The signature covers the literal request bytes, UTF-8 included"""
        event = json.loads(stripe_event(invoice))
        event["data"]["object"]["metadata"]["client_name"] = "Kopi Kenangan Café"
        payload = json.dumps(event, ensure_ascii=False).encode("utf-8")
        assert isinstance(payload, bytes)

        parsed = StripeEventAuthenticator(webhook_secret=STRIPE_SECRET).authenticate(
            payload, stripe_signer(payload)
        )

        assert parsed.is_payment_completed
        assert parsed.correlation.client_name == "Kopi Kenangan Café"

    def test_tampered_body(self, invoice, stripe_event, stripe_signer):
        payload = stripe_event(invoice)
        header = stripe_signer(payload)
        tampered = payload.replace(b"12000000", b"100")

        with pytest.raises(AuthenticationError):
            StripeEventAuthenticator(webhook_secret=STRIPE_SECRET).authenticate(tampered, header)

    def test_wrong_secret(self, invoice, stripe_event, stripe_signer):
        payload = stripe_event(invoice)
        header = stripe_signer(payload, secret="whsec_other")

        with pytest.raises(AuthenticationError):
            StripeEventAuthenticator(webhook_secret=STRIPE_SECRET).authenticate(payload, header)

    def test_missing_header(self, invoice, stripe_event):
        with pytest.raises(AuthenticationError, match="Missing"):
            StripeEventAuthenticator(webhook_secret=STRIPE_SECRET).authenticate(stripe_event(invoice), None)

    def test_unconfigured_secret(self, invoice, stripe_event, stripe_signer):
        payload = stripe_event(invoice)
        with pytest.raises(AuthenticationError):
            StripeEventAuthenticator(webhook_secret="").authenticate(payload, stripe_signer(payload))

    def test_stale_timestamp(self, invoice, stripe_event, stripe_signer):
        payload = stripe_event(invoice)
        header = stripe_signer(payload, timestamp=int(time.time()) - 3600)

        with pytest.raises(AuthenticationError):
            StripeEventAuthenticator(webhook_secret=STRIPE_SECRET, tolerance=300).authenticate(payload, header)

    def test_signed_garbage_is_malformed(self, stripe_signer):
        payload = b"not json"
        with pytest.raises(MalformedEventError):
            StripeEventAuthenticator(webhook_secret=STRIPE_SECRET).authenticate(payload, stripe_signer(payload))


class TestStripeParsing:
    """Event kind and correlation extraction."""

    def test_other_event_type(self, invoice, stripe_event):
        auth = StripeEventAuthenticator(webhook_secret=STRIPE_SECRET)
        event = auth.parse(json.loads(stripe_event(invoice, event_type="customer.created")))
        assert event.kind == GatewayEventKind.OTHER
        assert event.raw_type == "customer.created"

    def test_unpaid_session_is_not_completed(self, invoice, stripe_event):
        auth = StripeEventAuthenticator(webhook_secret=STRIPE_SECRET)
        event = auth.parse(json.loads(stripe_event(invoice, payment_status="unpaid")))
        assert not event.is_payment_completed

    def test_async_payment_succeeded(self, invoice, stripe_event):
        auth = StripeEventAuthenticator(webhook_secret=STRIPE_SECRET)
        event = auth.parse(json.loads(
            stripe_event(invoice, event_type="checkout.session.async_payment_succeeded")
        ))
        assert event.is_payment_completed

    def test_missing_metadata(self, invoice, stripe_event):
        auth = StripeEventAuthenticator(webhook_secret=STRIPE_SECRET)
        event = auth.parse(json.loads(stripe_event(invoice, metadata={"invoice_id": invoice.id})))
        assert set(event.missing_fields()) == {"user_id", "document_number", "client_name"}


class TestMidtransAuthentication:
    """SHA512 signature_key verification."""

    def test_valid_settlement(self, invoice, midtrans_notification):
        auth = MidtransEventAuthenticator(server_key=MIDTRANS_SERVER_KEY)
        event = auth.authenticate(midtrans_notification(invoice))

        assert event.gateway == "midtrans"
        assert event.is_payment_completed
        assert event.reference == "mt-trx-001"
        assert event.correlation.document_id == invoice.id
        assert event.correlation.amount == 120000
        # 10:16:30 WIB
        assert event.occurred_at == datetime(2024, 3, 1, 3, 16, 30, tzinfo=timezone.utc)
        assert event.missing_fields() == []

    def test_bad_signature(self, invoice, midtrans_notification):
        auth = MidtransEventAuthenticator(server_key=MIDTRANS_SERVER_KEY)
        with pytest.raises(AuthenticationError):
            auth.authenticate(midtrans_notification(invoice, signature_key="0" * 128))

    def test_signed_with_other_key(self, invoice, midtrans_notification):
        auth = MidtransEventAuthenticator(server_key=MIDTRANS_SERVER_KEY)
        with pytest.raises(AuthenticationError):
            auth.authenticate(midtrans_notification(invoice, server_key="another-key"))

    def test_unparseable_body(self):
        auth = MidtransEventAuthenticator(server_key=MIDTRANS_SERVER_KEY)
        with pytest.raises(AuthenticationError):
            auth.authenticate(b"{broken")

    def test_pending_is_not_completed(self, invoice, midtrans_notification):
        auth = MidtransEventAuthenticator(server_key=MIDTRANS_SERVER_KEY)
        event = auth.authenticate(midtrans_notification(invoice, transaction_status="pending"))
        assert event.kind == GatewayEventKind.OTHER

    def test_challenged_capture_is_not_completed(self, invoice, midtrans_notification):
        auth = MidtransEventAuthenticator(server_key=MIDTRANS_SERVER_KEY)
        event = auth.authenticate(
            midtrans_notification(invoice, transaction_status="capture", fraud_status="challenge")
        )
        assert not event.is_payment_completed
