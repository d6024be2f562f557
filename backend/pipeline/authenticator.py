"""
Event Authenticator
===================
Turns a raw gateway callback plus its claimed signature into a trusted
PaymentEvent, or rejects it. Verification always runs over the literal
request bytes before anything is parsed.

- Stripe: `Stripe-Signature` header, HMAC-SHA256 over "<t>.<body>", with a
  timestamp tolerance window (verified by the stripe SDK).
- Midtrans: `signature_key` inside the body,
  SHA512(order_id + status_code + gross_amount + server_key).

pip install stripe structlog
"""

import hashlib
import hmac
import json
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Optional

import stripe
import structlog

from config import settings
from pipeline.errors import AuthenticationError, MalformedEventError
from schemas.events import GatewayEventKind, PaymentCorrelation, PaymentEvent

logger = structlog.get_logger().bind(component="event_authenticator")

WIB = timezone(timedelta(hours=7))


def _to_float(value) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class EventAuthenticator(ABC):
    """Verifies and parses callbacks from one gateway"""

    gateway: str = "unknown"

    @abstractmethod
    def authenticate(self, payload: bytes, signature: Optional[str] = None) -> PaymentEvent:
        """Return the typed event or raise AuthenticationError"""

    @staticmethod
    def _load_json(payload: bytes) -> dict:
        try:
            data = json.loads(payload)
        except (UnicodeDecodeError, ValueError) as e:
            raise MalformedEventError("Event body is not valid JSON") from e
        if not isinstance(data, dict):
            raise MalformedEventError("Event body must be a JSON object")
        return data


# =============================================================================
# STRIPE
# =============================================================================

class StripeEventAuthenticator(EventAuthenticator):
    """Checkout Session webhooks"""

    gateway = "stripe"

    COMPLETED_EVENTS = {
        "checkout.session.completed",
        "checkout.session.async_payment_succeeded",
    }
    SETTLED_PAYMENT_STATUSES = {"paid", "no_payment_required"}

    REQUIRED_FIELDS = ("document_id", "user_id", "document_number", "client_name", "amount")

    def __init__(self, webhook_secret: Optional[str] = None, tolerance: Optional[int] = None):
        self._secret = webhook_secret if webhook_secret is not None else settings.STRIPE_WEBHOOK_SECRET
        self._tolerance = tolerance if tolerance is not None else settings.STRIPE_WEBHOOK_TOLERANCE

    def authenticate(self, payload: bytes, signature: Optional[str] = None) -> PaymentEvent:
        if not self._secret:
            logger.error("webhook_secret_missing", gateway=self.gateway)
            raise AuthenticationError("Stripe webhook secret is not configured")
        if not signature:
            raise AuthenticationError("Missing Stripe-Signature header")

        # CRITICAL: Verify signature BEFORE parsing
        try:
            stripe.Webhook.construct_event(
                payload, signature, self._secret, tolerance=self._tolerance
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("webhook_signature_invalid", gateway=self.gateway, error=str(e))
            raise AuthenticationError("Invalid webhook signature") from e
        except ValueError as e:
            # Signature matched but the body is not JSON
            raise MalformedEventError("Event body is not valid JSON") from e

        # Parse the raw body, not the StripeObject, so fields read as plain dicts
        return self.parse(self._load_json(payload))

    def parse(self, event: dict) -> PaymentEvent:
        event_type = event.get("type", "unknown")
        session = (event.get("data") or {}).get("object") or {}
        metadata = session.get("metadata") or {}

        completed = (
            event_type in self.COMPLETED_EVENTS
            and session.get("payment_status", "paid") in self.SETTLED_PAYMENT_STATUSES
        )

        amount_total = _to_float(session.get("amount_total"))
        created = event.get("created") or session.get("created")

        return PaymentEvent(
            gateway=self.gateway,
            kind=GatewayEventKind.PAYMENT_COMPLETED if completed else GatewayEventKind.OTHER,
            raw_type=event_type,
            event_id=event.get("id"),
            reference=session.get("id"),
            occurred_at=(
                datetime.fromtimestamp(created, tz=timezone.utc)
                if isinstance(created, (int, float)) else None
            ),
            correlation=PaymentCorrelation(
                document_id=metadata.get("invoice_id"),
                user_id=metadata.get("user_id"),
                document_number=metadata.get("invoice_number"),
                client_name=metadata.get("client_name"),
                # Stripe reports minor units
                amount=amount_total / 100 if amount_total is not None else None,
            ),
            required_fields=self.REQUIRED_FIELDS,
        )


# =============================================================================
# MIDTRANS
# =============================================================================

class MidtransEventAuthenticator(EventAuthenticator):
    """HTTP notifications from Midtrans Snap"""

    gateway = "midtrans"

    SETTLED_STATUSES = {"capture", "settlement"}
    REQUIRED_FIELDS = ("document_id", "amount")

    def __init__(self, server_key: Optional[str] = None):
        self._server_key = server_key if server_key is not None else settings.MIDTRANS_SERVER_KEY

    def expected_signature(self, order_id: str, status_code: str, gross_amount: str) -> str:
        raw = f"{order_id}{status_code}{gross_amount}{self._server_key}"
        return hashlib.sha512(raw.encode()).hexdigest()

    def authenticate(self, payload: bytes, signature: Optional[str] = None) -> PaymentEvent:
        if not self._server_key:
            logger.error("webhook_secret_missing", gateway=self.gateway)
            raise AuthenticationError("Midtrans server key is not configured")

        try:
            notification = json.loads(payload)
        except (UnicodeDecodeError, ValueError) as e:
            raise AuthenticationError("Notification body cannot be verified") from e
        if not isinstance(notification, dict):
            raise AuthenticationError("Notification body cannot be verified")

        claimed = signature or notification.get("signature_key")
        if not claimed or not isinstance(claimed, str):
            raise AuthenticationError("Missing signature_key")

        expected = self.expected_signature(
            str(notification.get("order_id", "")),
            str(notification.get("status_code", "")),
            str(notification.get("gross_amount", "")),
        )
        if not hmac.compare_digest(expected.encode(), claimed.encode()):
            logger.warning("webhook_signature_invalid",
                           gateway=self.gateway,
                           order_id=notification.get("order_id"))
            raise AuthenticationError("Invalid webhook signature")

        return self.parse(notification)

    def parse(self, notification: dict) -> PaymentEvent:
        status = notification.get("transaction_status", "unknown")
        fraud_status = notification.get("fraud_status")
        completed = status in self.SETTLED_STATUSES and (
            fraud_status == "accept" or (fraud_status is None and status == "settlement")
        )

        timestamp = notification.get("settlement_time") or notification.get("transaction_time")
        occurred_at = None
        if isinstance(timestamp, str):
            try:
                occurred_at = datetime.strptime(timestamp, "%Y-%m-%d %H:%M:%S").replace(tzinfo=WIB)
            except ValueError:
                occurred_at = None

        return PaymentEvent(
            gateway=self.gateway,
            kind=GatewayEventKind.PAYMENT_COMPLETED if completed else GatewayEventKind.OTHER,
            raw_type=status,
            event_id=notification.get("transaction_id"),
            reference=notification.get("transaction_id"),
            occurred_at=occurred_at,
            correlation=PaymentCorrelation(
                # order_id carries a per-attempt suffix; custom_field1 is the invoice id
                document_id=notification.get("custom_field1") or notification.get("order_id"),
                amount=_to_float(notification.get("gross_amount")),
            ),
            required_fields=self.REQUIRED_FIELDS,
        )
