"""
Postgres Document Store
=======================
asyncpg implementation of the document store.

A unit of work is one database transaction: the document row is read with
SELECT ... FOR UPDATE, the status change is an UPDATE guarded on the status
observed, and payments carry UNIQUE(gateway, gateway_reference) so a
redelivered gateway event can never insert a second payment.

pip install asyncpg
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Optional

import asyncpg
import structlog

from database import Database, get_correlation_events, log_event
from pipeline.errors import DuplicatePaymentError, PersistenceError, ReconciliationError
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
)
from storage.document_store import (
    AuditLogEntry,
    DocumentStore,
    DocumentTransaction,
    IAuditLog,
)

logger = structlog.get_logger().bind(component="postgres_store")

DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


class _Tables:
    """Per-kind table and column names"""

    def __init__(self, table: str, items: str, number: str, parent: str, date_column: str):
        self.table = table
        self.items = items
        self.number = number
        self.parent = parent
        self.date_column = date_column


TABLES = {
    DocumentKind.INVOICE: _Tables("invoices", "invoice_items", "invoice_number", "invoice_id", "due_date"),
    DocumentKind.QUOTE: _Tables("quotes", "quote_items", "quote_number", "quote_id", "valid_until"),
}


def _status_value(status) -> str:
    return status.value if hasattr(status, "value") else str(status)


async def _load_document(
    conn: asyncpg.Connection,
    kind: DocumentKind,
    document_id: str,
    for_update: bool = False,
) -> Optional[Document]:
    t = TABLES[kind]
    lock = " FOR UPDATE" if for_update else ""
    row = await conn.fetchrow(f"SELECT * FROM {t.table} WHERE id = $1{lock}", document_id)
    if not row:
        return None
    items = await conn.fetch(
        f"SELECT * FROM {t.items} WHERE {t.parent} = $1 ORDER BY position",
        document_id,
    )
    return _row_to_document(kind, row, items)


def _row_to_document(kind: DocumentKind, row, items=()) -> Document:
    t = TABLES[kind]
    data = dict(row)
    return Document(
        id=data["id"],
        kind=kind,
        number=data[t.number],
        user_id=data["user_id"],
        client_name=data.get("to_client") or "",
        items=[
            LineItem(
                description=item["description"],
                quantity=float(item["quantity"]),
                unit=item["unit"],
                unit_price=float(item["unit_price"]),
            )
            for item in items
        ],
        discount=float(data.get("discount_amount") or 0),
        tax=float(data.get("tax_amount") or 0),
        status=data["status"],
        due_date=data.get("due_date"),
        valid_until=data.get("valid_until"),
        created_at=data["created_at"],
        updated_at=data["updated_at"],
        version=data["version"],
    )


# =============================================================================
# TRANSACTION
# =============================================================================

class PostgresDocumentTransaction(DocumentTransaction):

    def __init__(self, conn: asyncpg.Connection):
        self._conn = conn

    async def lock_document(self, kind: DocumentKind, document_id: str) -> Optional[Document]:
        return await _load_document(self._conn, DocumentKind(kind), document_id, for_update=True)

    async def update_status(
        self,
        kind: DocumentKind,
        document_id: str,
        expected: DocumentStatus,
        new_status: DocumentStatus,
    ) -> Optional[Document]:
        kind = DocumentKind(kind)
        t = TABLES[kind]
        row = await self._conn.fetchrow(
            f"""
            UPDATE {t.table}
            SET status = $1, updated_at = NOW(), version = version + 1
            WHERE id = $2 AND status = $3
            RETURNING id
            """,
            _status_value(new_status),
            document_id,
            _status_value(expected),
        )
        if row is None:
            return None
        return await _load_document(self._conn, kind, document_id)

    async def insert_payment(self, record: PaymentRecord) -> PaymentRecord:
        try:
            await self._conn.execute(
                """
                INSERT INTO payments
                (id, invoice_id, user_id, amount, payment_date, notes, status,
                 gateway, gateway_reference, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                """,
                record.id,
                record.invoice_id,
                record.user_id,
                record.amount,
                record.payment_date,
                record.notes,
                record.status.value,
                record.gateway,
                record.gateway_reference,
                record.created_at,
            )
        except asyncpg.UniqueViolationError as e:
            raise DuplicatePaymentError(
                f"Payment {record.gateway_reference} already recorded",
                details={"gateway": record.gateway, "reference": record.gateway_reference},
            ) from e
        return record

    async def insert_notification(self, notification: Notification) -> Notification:
        await self._conn.execute(
            """
            INSERT INTO notifications (id, user_id, message, link, is_read, created_at)
            VALUES ($1, $2, $3, $4, $5, $6)
            """,
            notification.id,
            notification.user_id,
            notification.message,
            notification.link,
            notification.is_read,
            notification.created_at,
        )
        return notification


# =============================================================================
# STORE
# =============================================================================

class PostgresDocumentStore(DocumentStore):
    """Document store backed by the shared asyncpg pool"""

    backend = "postgres"

    @asynccontextmanager
    async def _connection(self):
        try:
            async with Database.acquire() as conn:
                yield conn
        except ReconciliationError:
            raise
        except DRIVER_ERRORS as e:
            logger.error("store_unavailable", error=str(e), error_type=type(e).__name__)
            raise PersistenceError("Document store unavailable") from e

    async def get_document(self, kind: DocumentKind, document_id: str) -> Optional[Document]:
        async with self._connection() as conn:
            return await _load_document(conn, DocumentKind(kind), document_id)

    async def save_document(self, document: Document) -> Document:
        t = TABLES[document.kind]
        async with self._connection() as conn:
            async with conn.transaction():
                await conn.execute(
                    f"""
                    INSERT INTO {t.table}
                    (id, user_id, {t.number}, to_client, discount_amount, tax_amount,
                     status, {t.date_column}, version, created_at, updated_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                    ON CONFLICT (id) DO UPDATE SET
                        user_id = EXCLUDED.user_id,
                        {t.number} = EXCLUDED.{t.number},
                        to_client = EXCLUDED.to_client,
                        discount_amount = EXCLUDED.discount_amount,
                        tax_amount = EXCLUDED.tax_amount,
                        status = EXCLUDED.status,
                        {t.date_column} = EXCLUDED.{t.date_column},
                        version = EXCLUDED.version,
                        updated_at = EXCLUDED.updated_at
                    """,
                    document.id,
                    document.user_id,
                    document.number,
                    document.client_name,
                    document.discount,
                    document.tax,
                    _status_value(document.status),
                    document.due_date if document.kind == DocumentKind.INVOICE else document.valid_until,
                    document.version,
                    document.created_at,
                    document.updated_at,
                )
                await conn.execute(f"DELETE FROM {t.items} WHERE {t.parent} = $1", document.id)
                await conn.executemany(
                    f"""
                    INSERT INTO {t.items} ({t.parent}, position, description, quantity, unit, unit_price)
                    VALUES ($1, $2, $3, $4, $5, $6)
                    """,
                    [
                        (document.id, position, item.description, item.quantity, item.unit, item.unit_price)
                        for position, item in enumerate(document.items)
                    ],
                )
        return document

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[PostgresDocumentTransaction]:
        async with self._connection() as conn:
            try:
                async with conn.transaction():
                    yield PostgresDocumentTransaction(conn)
            except ReconciliationError:
                raise
            except DRIVER_ERRORS as e:
                logger.error("unit_of_work_failed", error=str(e), error_type=type(e).__name__)
                raise PersistenceError("Atomic write unit failed; nothing was committed") from e

    async def list_payments(self, invoice_id: Optional[str] = None) -> list[PaymentRecord]:
        async with self._connection() as conn:
            if invoice_id:
                rows = await conn.fetch(
                    "SELECT * FROM payments WHERE invoice_id = $1 ORDER BY created_at", invoice_id
                )
            else:
                rows = await conn.fetch("SELECT * FROM payments ORDER BY created_at")
        return [
            PaymentRecord(**{**dict(row), "amount": float(row["amount"])})
            for row in rows
        ]

    async def list_notifications(self, user_id: Optional[str] = None) -> list[Notification]:
        async with self._connection() as conn:
            if user_id:
                rows = await conn.fetch(
                    "SELECT * FROM notifications WHERE user_id = $1 ORDER BY created_at", user_id
                )
            else:
                rows = await conn.fetch("SELECT * FROM notifications ORDER BY created_at")
        return [Notification(**dict(row)) for row in rows]

    async def insert_notifications(self, notifications: list[Notification]) -> int:
        if not notifications:
            return 0
        async with self._connection() as conn:
            await conn.executemany(
                """
                INSERT INTO notifications (id, user_id, message, link, is_read, created_at)
                VALUES ($1, $2, $3, $4, $5, $6)
                """,
                [(n.id, n.user_id, n.message, n.link, n.is_read, n.created_at) for n in notifications],
            )
        return len(notifications)

    async def save_workflow(self, workflow: Workflow) -> Workflow:
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO workflows (id, user_id, trigger_type, action_type, is_active)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (id) DO UPDATE SET
                    trigger_type = EXCLUDED.trigger_type,
                    action_type = EXCLUDED.action_type,
                    is_active = EXCLUDED.is_active
                """,
                workflow.id,
                workflow.user_id,
                workflow.trigger_type,
                workflow.action_type,
                workflow.is_active,
            )
        return workflow

    async def list_workflow_user_ids(self, trigger_type: str) -> list[str]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT DISTINCT user_id FROM workflows
                WHERE is_active = TRUE
                  AND trigger_type = $1
                  AND action_type = 'send_internal_notification'
                ORDER BY user_id
                """,
                trigger_type,
            )
        return [row["user_id"] for row in rows]

    async def list_overdue_invoices(self, user_ids: list[str], as_of: datetime) -> list[Document]:
        if not user_ids:
            return []
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM invoices
                WHERE user_id = ANY($1) AND status <> $2 AND due_date < $3
                ORDER BY due_date
                """,
                user_ids,
                InvoiceStatus.PAID.value,
                as_of,
            )
        return [_row_to_document(DocumentKind.INVOICE, row) for row in rows]

    async def list_expiring_quotes(
        self, user_ids: list[str], start: datetime, end: datetime
    ) -> list[Document]:
        if not user_ids:
            return []
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM quotes
                WHERE user_id = ANY($1) AND status = $2
                  AND valid_until >= $3 AND valid_until <= $4
                ORDER BY valid_until
                """,
                user_ids,
                QuoteStatus.PENDING.value,
                start,
                end,
            )
        return [_row_to_document(DocumentKind.QUOTE, row) for row in rows]


# =============================================================================
# AUDIT LOG
# =============================================================================

class PostgresAuditLog(IAuditLog):
    """Audit entries land in the system_events black box"""

    async def append(self, entry: AuditLogEntry) -> None:
        await log_event(
            correlation_id=entry.correlation_id,
            event_type=entry.event_type.value,
            payload={
                "entity_type": entry.entity_type,
                "entity_id": entry.entity_id,
                "previous_state": entry.previous_state,
                "new_state": entry.new_state,
                "metadata": entry.metadata,
                "actor": entry.actor,
            },
            agent="reconciliation",
        )

    async def get_by_correlation_id(self, correlation_id: str) -> list[AuditLogEntry]:
        rows = await get_correlation_events(correlation_id)
        entries = []
        for row in rows:
            payload = row["payload"] or {}
            entries.append(AuditLogEntry(
                log_id=str(row["id"]),
                correlation_id=row["correlation_id"],
                event_type=row["event_type"],
                entity_type=payload.get("entity_type", "unknown"),
                entity_id=payload.get("entity_id"),
                previous_state=payload.get("previous_state"),
                new_state=payload.get("new_state"),
                metadata=payload.get("metadata") or {},
                timestamp=row["timestamp"],
                actor=payload.get("actor", "system"),
            ))
        return entries
