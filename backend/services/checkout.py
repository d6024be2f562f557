"""
Checkout Service
================
Creates Stripe Checkout Sessions for unpaid invoices. The session metadata
carries the correlation block (invoice id, owner, number, client) that the
payment webhook later reconciles against.

pip install stripe structlog
"""

import uuid
from typing import Optional

import stripe
import structlog
from pydantic import BaseModel

from config import settings
from pipeline.errors import (
    DocumentNotFoundError,
    InvalidRequestError,
    PersistenceError,
    TransitionConflictError,
)
from schemas.documents import DocumentKind, InvoiceStatus
from services.totals import document_totals
from storage.document_store import (
    AuditEventType,
    AuditLogEntry,
    DocumentStore,
    IAuditLog,
)


class CheckoutResult(BaseModel):
    """Checkout session creation result"""
    session_id: str
    checkout_url: Optional[str] = None
    invoice_id: str
    amount: float
    currency: str
    correlation_id: str


class CheckoutService:
    """Stripe-hosted payment page for one invoice"""

    def __init__(
        self,
        store: DocumentStore,
        audit_log: Optional[IAuditLog] = None,
        stripe_client=stripe,
        api_key: Optional[str] = None,
        currency: Optional[str] = None,
    ):
        self.store = store
        self.audit = audit_log
        self._stripe = stripe_client
        self._api_key = api_key if api_key is not None else settings.STRIPE_SECRET_KEY
        self._currency = currency or settings.CURRENCY
        self._logger = structlog.get_logger().bind(component="checkout")

    async def create_checkout(self, invoice_id: str, origin: Optional[str] = None) -> CheckoutResult:
        """
        Create a Checkout Session for the invoice's current total.

        Args:
            invoice_id: Invoice to pay
            origin: Frontend origin for the redirect URLs

        Raises:
            DocumentNotFoundError: unknown invoice
            TransitionConflictError: invoice already paid
            InvalidRequestError: total is not payable
            PersistenceError: Stripe rejected the request
        """
        correlation_id = str(uuid.uuid4())
        log = self._logger.bind(correlation_id=correlation_id, invoice_id=invoice_id)

        invoice = await self.store.get_document(DocumentKind.INVOICE, invoice_id)
        if invoice is None:
            raise DocumentNotFoundError(f"Invoice {invoice_id} not found")
        if invoice.status == InvoiceStatus.PAID:
            raise TransitionConflictError(f"Invoice {invoice.number} is already paid")

        amount = document_totals(invoice)["total"]
        unit_amount = int(round(amount * 100))  # Stripe expects minor units
        if unit_amount <= 0:
            raise InvalidRequestError("Invoice total must be greater than zero")

        base_url = (origin or settings.FRONTEND_URL).rstrip("/")
        log.info("checkout_initiated", amount=amount, currency=self._currency)

        try:
            session = self._stripe.checkout.Session.create(
                api_key=self._api_key,
                mode="payment",
                payment_method_types=["card"],
                line_items=[{
                    "price_data": {
                        "currency": self._currency,
                        "product_data": {
                            "name": f"Invoice #{invoice.number}",
                            "description": f"Payment for {invoice.client_name}",
                        },
                        "unit_amount": unit_amount,
                    },
                    "quantity": 1,
                }],
                success_url=f"{base_url}/invoice/public/{invoice.id}?payment=success",
                cancel_url=f"{base_url}/invoice/public/{invoice.id}",
                metadata={
                    "invoice_id": invoice.id,
                    "user_id": invoice.user_id,
                    "invoice_number": invoice.number,
                    "client_name": invoice.client_name,
                    "correlation_id": correlation_id,
                },
                idempotency_key=f"checkout_{invoice.id}_v{invoice.version}",
            )
        except stripe.StripeError as e:
            log.error("checkout_failed", error=str(e), error_type=type(e).__name__)
            raise PersistenceError("Failed to create checkout session") from e

        if self.audit is not None:
            await self.audit.append(AuditLogEntry(
                correlation_id=correlation_id,
                event_type=AuditEventType.CHECKOUT_CREATED,
                entity_type="invoice",
                entity_id=invoice.id,
                new_state={"session_id": session["id"]},
                metadata={"amount": amount, "currency": self._currency},
                actor="user",
            ))

        log.info("checkout_created", stripe_session_id=session["id"])

        return CheckoutResult(
            session_id=session["id"],
            checkout_url=session["url"],
            invoice_id=invoice.id,
            amount=amount,
            currency=self._currency,
            correlation_id=correlation_id,
        )
