"""
Midtrans Snap Transactions
==========================
Creates a Snap transaction for an unpaid invoice and hands the Snap token
back to the payment page. Every attempt gets its own order_id
("<invoice id>-<ms timestamp>"); the invoice id travels in custom_field1 so
the HTTP notification can be matched back to the invoice.

pip install httpx structlog
"""

import time
import uuid
from typing import Optional

import httpx
import structlog
from pydantic import BaseModel

from config import settings
from pipeline.errors import (
    DocumentNotFoundError,
    InvalidRequestError,
    PersistenceError,
    TransitionConflictError,
)
from schemas.documents import Document, DocumentKind, InvoiceStatus
from services.totals import document_totals
from storage.document_store import (
    AuditEventType,
    AuditLogEntry,
    DocumentStore,
    IAuditLog,
)

SANDBOX_URL = "https://app.sandbox.midtrans.com/snap/v1/transactions"
PRODUCTION_URL = "https://app.midtrans.com/snap/v1/transactions"

ITEM_NAME_LIMIT = 50


class MidtransTransactionResult(BaseModel):
    """Snap transaction creation result"""
    token: str
    redirect_url: Optional[str] = None
    order_id: str
    invoice_id: str
    amount: int
    correlation_id: str


def build_item_details(invoice: Document) -> list[dict]:
    """Line items plus discount and tax lines, in whole rupiah"""
    items = [
        {
            "id": f"{invoice.id}-{position}",
            "price": round(item.unit_price),
            "quantity": item.quantity,
            "name": item.description[:ITEM_NAME_LIMIT],
        }
        for position, item in enumerate(invoice.items)
    ]
    if invoice.discount:
        items.append({"id": "discount", "price": -round(invoice.discount), "quantity": 1, "name": "Discount"})
    if invoice.tax:
        items.append({"id": "tax", "price": round(invoice.tax), "quantity": 1, "name": "Tax"})
    return items


class MidtransTransactionService:
    """Snap payment page for one invoice"""

    def __init__(
        self,
        store: DocumentStore,
        audit_log: Optional[IAuditLog] = None,
        client: Optional[httpx.AsyncClient] = None,
        server_key: Optional[str] = None,
        is_production: Optional[bool] = None,
        timeout: float = 10.0,
        clock=time.time,
    ):
        self.store = store
        self.audit = audit_log
        self._client = client
        self._server_key = server_key if server_key is not None else settings.MIDTRANS_SERVER_KEY
        self._is_production = (
            is_production if is_production is not None else settings.MIDTRANS_IS_PRODUCTION
        )
        self._timeout = timeout
        self._clock = clock
        self._logger = structlog.get_logger().bind(component="midtrans_transactions")

    @property
    def api_url(self) -> str:
        return PRODUCTION_URL if self._is_production else SANDBOX_URL

    async def create_transaction(self, invoice_id: str) -> MidtransTransactionResult:
        """
        Create a Snap transaction for the invoice's current total.

        Raises:
            DocumentNotFoundError: unknown invoice
            TransitionConflictError: invoice already paid
            InvalidRequestError: total is not payable
            PersistenceError: server key missing or Midtrans rejected the request
        """
        correlation_id = str(uuid.uuid4())
        log = self._logger.bind(correlation_id=correlation_id, invoice_id=invoice_id)

        invoice = await self.store.get_document(DocumentKind.INVOICE, invoice_id)
        if invoice is None:
            raise DocumentNotFoundError(f"Invoice {invoice_id} not found")
        if invoice.status == InvoiceStatus.PAID:
            raise TransitionConflictError(f"Invoice {invoice.number} is already paid")

        if not self._server_key:
            log.error("midtrans_server_key_missing")
            raise PersistenceError("Midtrans server key is not configured")

        gross_amount = round(document_totals(invoice)["total"])
        if gross_amount <= 0:
            raise InvalidRequestError("Invoice total must be greater than zero")

        order_id = f"{invoice.id}-{int(self._clock() * 1000)}"
        payload = {
            "transaction_details": {
                "order_id": order_id,
                "gross_amount": gross_amount,
            },
            "customer_details": {"first_name": invoice.client_name},
            "item_details": build_item_details(invoice),
            "custom_field1": invoice.id,
        }

        log.info("midtrans_transaction_initiated", order_id=order_id, gross_amount=gross_amount)
        data = await self._post(payload, log)

        token = data.get("token")
        if not token:
            log.error("midtrans_token_missing", response=data)
            raise PersistenceError("Midtrans response did not include a Snap token")

        if self.audit is not None:
            await self.audit.append(AuditLogEntry(
                correlation_id=correlation_id,
                event_type=AuditEventType.MIDTRANS_TRANSACTION_CREATED,
                entity_type="invoice",
                entity_id=invoice.id,
                new_state={"order_id": order_id},
                metadata={"gross_amount": gross_amount, "production": self._is_production},
                actor="user",
            ))

        log.info("midtrans_transaction_created", order_id=order_id)

        return MidtransTransactionResult(
            token=token,
            redirect_url=data.get("redirect_url"),
            order_id=order_id,
            invoice_id=invoice.id,
            amount=gross_amount,
            correlation_id=correlation_id,
        )

    async def _post(self, payload: dict, log) -> dict:
        auth = httpx.BasicAuth(self._server_key, "")
        headers = {"Accept": "application/json"}
        try:
            if self._client is not None:
                response = await self._client.post(self.api_url, json=payload, auth=auth, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(self.api_url, json=payload, auth=auth, headers=headers)
        except httpx.HTTPError as e:
            log.error("midtrans_request_failed", error=str(e), error_type=type(e).__name__)
            raise PersistenceError("Failed to reach Midtrans") from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.is_error:
            messages = data.get("error_messages") if isinstance(data, dict) else None
            log.error("midtrans_transaction_failed", status_code=response.status_code, errors=messages)
            raise PersistenceError(
                ", ".join(messages) if messages else "Failed to create Midtrans transaction",
                details={"status_code": response.status_code},
            )
        return data if isinstance(data, dict) else {}
