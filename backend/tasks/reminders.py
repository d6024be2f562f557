"""
Reminder Sweeps
===============
One-shot sweeps an external scheduler triggers over HTTP (e.g. once a day).
Nothing here runs on its own timer.

- Overdue invoices: one notification per unpaid invoice past its due date
- Expiring quotes: one notification per pending quote expiring in N days

Only owners with an active workflow for the trigger get notifications.
"""

import os
import uuid
from datetime import datetime, time, timedelta, timezone
from typing import Optional

import structlog

from schemas.documents import Notification
from storage.document_store import (
    AuditEventType,
    AuditLogEntry,
    DocumentStore,
    IAuditLog,
)

# Configure logger
logger = structlog.get_logger().bind(component="reminders")


# =============================================================================
# CONFIGURATION
# =============================================================================

class ReminderConfig:
    """Reminder sweep configuration"""

    INVOICE_OVERDUE_TRIGGER = "invoice_overdue"
    QUOTE_EXPIRING_TRIGGER = "quote_expiring_3_days"

    # How far ahead to look for expiring quotes (days)
    QUOTE_EXPIRY_DAYS = int(os.getenv("QUOTE_EXPIRY_DAYS", "3"))


config = ReminderConfig()


# =============================================================================
# SWEEPS
# =============================================================================

async def _audit(audit_log: Optional[IAuditLog], sweep: str, created: int) -> None:
    if audit_log is None:
        return
    await audit_log.append(AuditLogEntry(
        correlation_id=str(uuid.uuid4()),
        event_type=AuditEventType.REMINDERS_SENT,
        entity_type="notification",
        metadata={"sweep": sweep, "notifications_created": created},
        actor="system",
    ))


async def notify_overdue_invoices(
    store: DocumentStore,
    now: Optional[datetime] = None,
    audit_log: Optional[IAuditLog] = None,
) -> dict:
    """
    Notify owners about unpaid invoices past their due date.

    Returns:
        {"notifications_created": n}
    """
    now = now or datetime.now(timezone.utc)

    user_ids = await store.list_workflow_user_ids(config.INVOICE_OVERDUE_TRIGGER)
    if not user_ids:
        logger.info("no_active_workflows", trigger=config.INVOICE_OVERDUE_TRIGGER)
        return {"notifications_created": 0}

    invoices = await store.list_overdue_invoices(user_ids, now)
    notifications = [
        Notification(
            user_id=invoice.user_id,
            message=(
                f"Invoice #{invoice.number} for client \"{invoice.client_name}\" "
                f"is overdue. Follow up soon!"
            ),
            link=invoice.link,
        )
        for invoice in invoices
    ]

    created = await store.insert_notifications(notifications)
    logger.info("overdue_reminders_sent", users=len(user_ids), notifications=created)
    await _audit(audit_log, "invoice_overdue", created)
    return {"notifications_created": created}


async def notify_expiring_quotes(
    store: DocumentStore,
    now: Optional[datetime] = None,
    days: Optional[int] = None,
    audit_log: Optional[IAuditLog] = None,
) -> dict:
    """
    Notify owners about pending quotes expiring exactly `days` days from now.

    The whole target day counts, 00:00:00 through 23:59:59.999999 UTC.
    """
    now = now or datetime.now(timezone.utc)
    days = config.QUOTE_EXPIRY_DAYS if days is None else days

    user_ids = await store.list_workflow_user_ids(config.QUOTE_EXPIRING_TRIGGER)
    if not user_ids:
        logger.info("no_active_workflows", trigger=config.QUOTE_EXPIRING_TRIGGER)
        return {"notifications_created": 0}

    target_day = (now.astimezone(timezone.utc) + timedelta(days=days)).date()
    start = datetime.combine(target_day, time.min, tzinfo=timezone.utc)
    end = datetime.combine(target_day, time.max, tzinfo=timezone.utc)

    quotes = await store.list_expiring_quotes(user_ids, start, end)
    notifications = [
        Notification(
            user_id=quote.user_id,
            message=(
                f"Quote #{quote.number} for client \"{quote.client_name}\" "
                f"expires in {days} days. Follow up soon!"
            ),
            link=quote.link,
        )
        for quote in quotes
    ]

    created = await store.insert_notifications(notifications)
    logger.info("expiry_reminders_sent", users=len(user_ids), notifications=created)
    await _audit(audit_log, "quote_expiring", created)
    return {"notifications_created": created}
