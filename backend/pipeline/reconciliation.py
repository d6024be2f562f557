"""
Reconciliation Coordinator
==========================
Applies external confirmations to document status, exactly once:

- Payment webhooks: authenticate -> route by event kind -> guard
  Unpaid -> Paid -> status + payment record + notification in one unit of
  work -> acknowledge. Authentic, well-formed events are always
  acknowledged, even when nothing changes, so the gateway stops retrying.
- Quote actions: validate target -> guard -> conditional status update ->
  return the updated quote. Conflicts are surfaced to the caller.

pip install pydantic structlog
"""

import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog
from pydantic import BaseModel

from pipeline.authenticator import (
    EventAuthenticator,
    MidtransEventAuthenticator,
    StripeEventAuthenticator,
)
from pipeline.errors import (
    AuthenticationError,
    DocumentNotFoundError,
    DuplicatePaymentError,
    InvalidRequestError,
    InvalidStatusError,
    MalformedEventError,
    TransitionConflictError,
)
from pipeline.transitions import evaluate_transition
from schemas.documents import (
    Document,
    DocumentKind,
    InvoiceStatus,
    Notification,
    PaymentRecord,
    QuoteStatus,
    parse_status,
)
from schemas.events import GatewayEventKind, PaymentCorrelation, PaymentEvent
from services.totals import document_totals, format_currency
from storage.document_store import (
    AuditEventType,
    AuditLogEntry,
    DocumentStore,
    IAuditLog,
    InMemoryAuditLog,
    InMemoryDocumentStore,
)


# =============================================================================
# RESULTS
# =============================================================================

class ReconciliationOutcome(str, Enum):
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    IGNORED = "ignored"
    REJECTED = "rejected"
    DOCUMENT_NOT_FOUND = "document_not_found"


class ReconciliationResult(BaseModel):
    """What one webhook delivery did. The caller only ever sees `received`."""
    received: bool = True
    outcome: ReconciliationOutcome
    correlation_id: str
    event_type: Optional[str] = None
    document_id: Optional[str] = None
    payment_id: Optional[str] = None
    notification_id: Optional[str] = None
    reason: Optional[str] = None

    def acknowledgement(self) -> dict:
        return {"received": self.received}


QUOTE_TERMINAL_STATUSES = (QuoteStatus.ACCEPTED, QuoteStatus.REJECTED)


# =============================================================================
# WEBHOOK ROUTER (Clean event handling)
# =============================================================================

WebhookHandler = Callable[[PaymentEvent, str], Awaitable[ReconciliationResult]]


class WebhookRouter:
    """
    Routes authenticated events to handlers by event kind.
    Kinds without a handler are acknowledged and ignored.
    """

    def __init__(self):
        self._handlers: dict[GatewayEventKind, WebhookHandler] = {}
        self._logger = structlog.get_logger().bind(component="webhook_router")

    def register(self, kind: GatewayEventKind):
        """Decorator to register handler for event kind"""
        def decorator(handler: WebhookHandler):
            self._handlers[kind] = handler
            self._logger.debug("handler_registered", kind=kind.value)
            return handler
        return decorator

    def handler_for(self, kind: GatewayEventKind) -> Optional[WebhookHandler]:
        return self._handlers.get(kind)


# =============================================================================
# COORDINATOR
# =============================================================================

class ReconciliationCoordinator:
    """
    Orchestrates one inbound confirmation end to end.

    Example:
        coordinator = ReconciliationCoordinator(store=PostgresDocumentStore())
        result = await coordinator.process_webhook("stripe", body, signature)
        quote = await coordinator.update_quote_status(quote_id, "Accepted")
    """

    def __init__(
        self,
        store: Optional[DocumentStore] = None,
        audit_log: Optional[IAuditLog] = None,
        authenticators: Optional[dict[str, EventAuthenticator]] = None,
    ):
        # Dependency injection with defaults
        self.store = store or InMemoryDocumentStore()
        self.audit = audit_log or InMemoryAuditLog()
        self.authenticators = authenticators or {
            "stripe": StripeEventAuthenticator(),
            "midtrans": MidtransEventAuthenticator(),
        }

        self.router = WebhookRouter()
        self._register_handlers()

        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: str = None):
        """Get logger bound with correlation context"""
        return self._base_logger.bind(
            component="reconciliation",
            correlation_id=correlation_id or str(uuid.uuid4()),
        )

    async def _emit_audit(
        self,
        event_type: AuditEventType,
        entity_type: str,
        entity_id: Optional[str],
        correlation_id: str,
        previous_state: dict = None,
        new_state: dict = None,
        metadata: dict = None,
        actor: str = "webhook",
    ):
        """Emit audit log entry"""
        entry = AuditLogEntry(
            correlation_id=correlation_id,
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            previous_state=previous_state,
            new_state=new_state,
            metadata=metadata or {},
            actor=actor,
        )
        await self.audit.append(entry)

        log = self._get_logger(correlation_id)
        log.info("audit_event",
                 event_type=event_type.value,
                 entity_type=entity_type,
                 entity_id=entity_id)

    # =========================================================================
    # WEBHOOK PROCESSING
    # =========================================================================

    async def process_webhook(
        self,
        gateway: str,
        payload: bytes,
        signature: Optional[str] = None,
    ) -> ReconciliationResult:
        """
        Reconcile one gateway callback.

        Raises:
            AuthenticationError: bad or missing signature; nothing written
            MalformedEventError: payment event lacks correlation fields
            PersistenceError: the write unit failed; gateway retry re-drives it
        """
        authenticator = self.authenticators.get(gateway)
        if authenticator is None:
            raise AuthenticationError(f"Unsupported payment gateway: {gateway}")

        # CRITICAL: Verify signature BEFORE anything else
        event = authenticator.authenticate(payload, signature)

        correlation_id = event.event_id or str(uuid.uuid4())
        log = self._get_logger(correlation_id)
        log.info("webhook_received",
                 gateway=event.gateway,
                 event_type=event.raw_type,
                 kind=event.kind.value)

        await self._emit_audit(
            event_type=AuditEventType.WEBHOOK_RECEIVED,
            entity_type="webhook",
            entity_id=event.event_id,
            correlation_id=correlation_id,
            metadata={"gateway": event.gateway, "event_type": event.raw_type},
        )

        handler = self.router.handler_for(event.kind)
        if handler is None:
            # Gateways deliver many event types to one endpoint
            log.info("webhook_ignored", event_type=event.raw_type)
            await self._emit_audit(
                event_type=AuditEventType.WEBHOOK_IGNORED,
                entity_type="webhook",
                entity_id=event.event_id,
                correlation_id=correlation_id,
                metadata={"gateway": event.gateway, "event_type": event.raw_type},
            )
            return ReconciliationResult(
                outcome=ReconciliationOutcome.IGNORED,
                correlation_id=correlation_id,
                event_type=event.raw_type,
                reason="unhandled_event_type",
            )

        return await handler(event, correlation_id)

    def _register_handlers(self):
        """Register all webhook handlers"""

        @self.router.register(GatewayEventKind.PAYMENT_COMPLETED)
        async def handle_payment_completed(event: PaymentEvent, correlation_id: str):
            return await self._on_payment_completed(event, correlation_id)

    @staticmethod
    def _complete_correlation(correlation: PaymentCorrelation, invoice: Document) -> PaymentCorrelation:
        """Fill fields the gateway does not carry from the stored invoice"""
        return correlation.model_copy(update={
            "user_id": correlation.user_id or invoice.user_id,
            "document_number": correlation.document_number or invoice.number,
            "client_name": correlation.client_name or invoice.client_name,
        })

    async def _on_payment_completed(self, event: PaymentEvent, correlation_id: str) -> ReconciliationResult:
        log = self._get_logger(correlation_id)

        missing = event.missing_fields()
        if missing:
            log.warning("malformed_payment_event", missing=missing)
            raise MalformedEventError(
                "Payment event is missing required fields",
                details={"missing": missing},
            )

        invoice_id = event.correlation.document_id
        result = ReconciliationResult(
            outcome=ReconciliationOutcome.APPLIED,
            correlation_id=correlation_id,
            event_type=event.raw_type,
            document_id=invoice_id,
        )
        previous_status = None

        try:
            async with self.store.unit_of_work() as tx:
                invoice = await tx.lock_document(DocumentKind.INVOICE, invoice_id)
                if invoice is None:
                    result.outcome = ReconciliationOutcome.DOCUMENT_NOT_FOUND
                    result.reason = "invoice_not_found"
                else:
                    previous_status = invoice.status
                    correlation = self._complete_correlation(event.correlation, invoice)
                    decision = evaluate_transition(
                        DocumentKind.INVOICE, invoice.status, InvoiceStatus.PAID
                    )

                    if decision.is_rejected:
                        result.outcome = ReconciliationOutcome.REJECTED
                        result.reason = decision.message
                    elif decision.is_noop:
                        result.outcome = ReconciliationOutcome.ALREADY_APPLIED
                    else:
                        expected_total = document_totals(invoice)["total"]
                        if abs(expected_total - correlation.amount) > 0.005:
                            # Recorded as reported; the gateway is the source of truth
                            log.warning("amount_mismatch",
                                        invoice_id=invoice_id,
                                        expected=expected_total,
                                        received=correlation.amount)
                        updated = await tx.update_status(
                            DocumentKind.INVOICE, invoice_id,
                            expected=invoice.status, new_status=InvoiceStatus.PAID,
                        )
                        if updated is None:
                            # Status moved between read and write
                            result.outcome = ReconciliationOutcome.ALREADY_APPLIED
                        else:
                            payment = await tx.insert_payment(self._build_payment(event, correlation))
                            notification = await tx.insert_notification(
                                self._build_payment_notification(correlation, updated)
                            )
                            result.payment_id = payment.id
                            result.notification_id = notification.id
        except DuplicatePaymentError:
            log.info("payment_already_recorded", reference=event.reference)
            result.outcome = ReconciliationOutcome.ALREADY_APPLIED
            result.payment_id = None
            result.notification_id = None

        await self._audit_payment_result(event, result, previous_status)
        return result

    def _build_payment(self, event: PaymentEvent, correlation: PaymentCorrelation) -> PaymentRecord:
        return PaymentRecord(
            invoice_id=correlation.document_id,
            user_id=correlation.user_id,
            amount=correlation.amount,
            payment_date=event.occurred_at,
            notes=(
                f"Online payment via {event.gateway.title()}. "
                f"Reference: {event.reference} (event {event.event_id})"
            ),
            status=InvoiceStatus.PAID,
            gateway=event.gateway,
            gateway_reference=event.reference,
        )

    def _build_payment_notification(self, correlation: PaymentCorrelation, invoice: Document) -> Notification:
        return Notification(
            user_id=correlation.user_id,
            message=(
                f"Payment of {format_currency(correlation.amount)} for invoice "
                f"#{correlation.document_number} from client "
                f"\"{correlation.client_name}\" was successful."
            ),
            link=invoice.link,
        )

    async def _audit_payment_result(
        self,
        event: PaymentEvent,
        result: ReconciliationResult,
        previous_status,
    ) -> None:
        log = self._get_logger(result.correlation_id)
        previous_state = {"status": previous_status.value} if previous_status else None

        if result.outcome == ReconciliationOutcome.APPLIED:
            log.info("payment_reconciled",
                     invoice_id=result.document_id,
                     payment_id=result.payment_id,
                     amount=event.correlation.amount)
            await self._emit_audit(
                event_type=AuditEventType.PAYMENT_RECONCILED,
                entity_type="invoice",
                entity_id=result.document_id,
                correlation_id=result.correlation_id,
                previous_state=previous_state,
                new_state={"status": InvoiceStatus.PAID.value},
                metadata={
                    "payment_id": result.payment_id,
                    "notification_id": result.notification_id,
                    "amount": event.correlation.amount,
                    "gateway": event.gateway,
                    "reference": event.reference,
                },
            )
        elif result.outcome == ReconciliationOutcome.ALREADY_APPLIED:
            log.info("payment_already_applied", invoice_id=result.document_id)
            await self._emit_audit(
                event_type=AuditEventType.PAYMENT_ALREADY_APPLIED,
                entity_type="invoice",
                entity_id=result.document_id,
                correlation_id=result.correlation_id,
                previous_state=previous_state,
                metadata={"gateway": event.gateway, "reference": event.reference},
            )
        elif result.outcome == ReconciliationOutcome.REJECTED:
            # Acknowledged anyway: the invoice already left the reconcilable state
            log.warning("transition_rejected",
                        invoice_id=result.document_id,
                        reason=result.reason)
            await self._emit_audit(
                event_type=AuditEventType.TRANSITION_REJECTED,
                entity_type="invoice",
                entity_id=result.document_id,
                correlation_id=result.correlation_id,
                previous_state=previous_state,
                metadata={"reason": result.reason, "reference": event.reference},
            )
        elif result.outcome == ReconciliationOutcome.DOCUMENT_NOT_FOUND:
            log.warning("invoice_not_found", invoice_id=result.document_id)
            await self._emit_audit(
                event_type=AuditEventType.DOCUMENT_NOT_FOUND,
                entity_type="invoice",
                entity_id=result.document_id,
                correlation_id=result.correlation_id,
                metadata={"gateway": event.gateway, "reference": event.reference},
            )

    # =========================================================================
    # QUOTE STATUS
    # =========================================================================

    async def update_quote_status(
        self,
        quote_id: Optional[str],
        status: Any,
        correlation_id: Optional[str] = None,
    ) -> Document:
        """
        Accept or reject a pending quote.

        Raises:
            InvalidRequestError: quote id or status missing
            InvalidStatusError: status is not Accepted/Rejected
            DocumentNotFoundError: no such quote
            TransitionConflictError: quote already decided otherwise
            PersistenceError: store failure
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        log = self._get_logger(correlation_id)

        if not quote_id or status in (None, ""):
            raise InvalidRequestError("quoteId and status are required")

        target = parse_status(DocumentKind.QUOTE, status)
        if target not in QUOTE_TERMINAL_STATUSES:
            log.warning("invalid_quote_status", quote_id=quote_id, status=str(status))
            raise InvalidStatusError(
                "Invalid status value",
                details={"allowed": [s.value for s in QUOTE_TERMINAL_STATUSES]},
            )

        async with self.store.unit_of_work() as tx:
            quote = await tx.lock_document(DocumentKind.QUOTE, quote_id)
            if quote is None:
                raise DocumentNotFoundError(f"Quote {quote_id} not found")

            decision = evaluate_transition(DocumentKind.QUOTE, quote.status, target)
            if decision.is_rejected:
                log.warning("quote_transition_rejected",
                            quote_id=quote_id,
                            current=decision.current,
                            requested=decision.target)
            decision.raise_for_reject()

            if decision.is_noop:
                log.info("quote_status_unchanged", quote_id=quote_id, status=target.value)
                return quote

            previous_status = quote.status
            updated = await tx.update_status(
                DocumentKind.QUOTE, quote_id,
                expected=quote.status, new_status=target,
            )
            if updated is None:
                raise TransitionConflictError(
                    f"Quote {quote_id} changed while updating",
                    details={"requested": target.value},
                )

        log.info("quote_status_updated",
                 quote_id=quote_id,
                 previous=previous_status.value,
                 status=target.value)
        await self._emit_audit(
            event_type=AuditEventType.QUOTE_STATUS_UPDATED,
            entity_type="quote",
            entity_id=quote_id,
            correlation_id=correlation_id,
            previous_state={"status": previous_status.value},
            new_state={"status": target.value},
            actor="user",
        )
        return updated

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    async def get_audit_trail(self, correlation_id: str) -> list[AuditLogEntry]:
        """Get full audit trail for one inbound call"""
        return await self.audit.get_by_correlation_id(correlation_id)
