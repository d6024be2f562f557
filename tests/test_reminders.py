"""
Tests for the overdue-invoice and expiring-quote sweeps.
"""

from datetime import datetime, timedelta, timezone

import pytest

from schemas.documents import Document, DocumentKind, InvoiceStatus, QuoteStatus, Workflow
from tasks.reminders import config, notify_expiring_quotes, notify_overdue_invoices

NOW = datetime(2024, 5, 10, 9, 0, tzinfo=timezone.utc)


def make_invoice(number, user_id="user-1", status=InvoiceStatus.UNPAID, due_in_days=-1):
    return Document(
        kind=DocumentKind.INVOICE,
        number=number,
        user_id=user_id,
        client_name="PT Maju Jaya",
        status=status,
        due_date=NOW + timedelta(days=due_in_days),
    )


def make_quote(number, user_id="user-1", status=QuoteStatus.PENDING, valid_until=None):
    return Document(
        kind=DocumentKind.QUOTE,
        number=number,
        user_id=user_id,
        client_name="CV Sinar",
        status=status,
        valid_until=valid_until,
    )


class TestOverdueInvoices:
    """One notification per unpaid invoice past due."""

    @pytest.mark.asyncio
    async def test_no_workflows(self, store):
        await store.save_document(make_invoice("INV-1"))

        result = await notify_overdue_invoices(store, now=NOW)

        assert result == {"notifications_created": 0}
        assert await store.list_notifications() == []

    @pytest.mark.asyncio
    async def test_notifies_overdue_only(self, store, audit_log):
        await store.save_workflow(Workflow(user_id="user-1", trigger_type=config.INVOICE_OVERDUE_TRIGGER))
        overdue = make_invoice("INV-1")
        await store.save_document(overdue)
        await store.save_document(make_invoice("INV-2", due_in_days=5))
        await store.save_document(make_invoice("INV-3", status=InvoiceStatus.PAID))
        # Owner without the workflow
        await store.save_document(make_invoice("INV-4", user_id="user-2"))

        result = await notify_overdue_invoices(store, now=NOW, audit_log=audit_log)

        assert result == {"notifications_created": 1}
        notifications = await store.list_notifications()
        assert notifications[0].user_id == "user-1"
        assert notifications[0].message == 'Invoice #INV-1 for client "PT Maju Jaya" is overdue. Follow up soon!'
        assert notifications[0].link == f"/invoice/{overdue.id}"
        assert len(audit_log.entries) == 1

    @pytest.mark.asyncio
    async def test_inactive_workflow(self, store):
        await store.save_workflow(Workflow(
            user_id="user-1", trigger_type=config.INVOICE_OVERDUE_TRIGGER, is_active=False,
        ))
        await store.save_document(make_invoice("INV-1"))

        result = await notify_overdue_invoices(store, now=NOW)

        assert result["notifications_created"] == 0


class TestExpiringQuotes:
    """Pending quotes whose validity ends on the target day."""

    @pytest.mark.asyncio
    async def test_window_is_whole_day(self, store):
        await store.save_workflow(Workflow(user_id="user-1", trigger_type=config.QUOTE_EXPIRING_TRIGGER))
        target = datetime(2024, 5, 13, tzinfo=timezone.utc)
        await store.save_document(make_quote("Q-1", valid_until=target))
        await store.save_document(make_quote("Q-2", valid_until=target + timedelta(hours=23, minutes=59)))
        await store.save_document(make_quote("Q-3", valid_until=target + timedelta(days=1)))
        await store.save_document(make_quote("Q-4", valid_until=target - timedelta(seconds=1)))
        await store.save_document(make_quote("Q-5", status=QuoteStatus.ACCEPTED, valid_until=target))

        result = await notify_expiring_quotes(store, now=NOW, days=3)

        assert result == {"notifications_created": 2}
        messages = sorted(n.message for n in await store.list_notifications())
        assert messages == [
            'Quote #Q-1 for client "CV Sinar" expires in 3 days. Follow up soon!',
            'Quote #Q-2 for client "CV Sinar" expires in 3 days. Follow up soon!',
        ]

    @pytest.mark.asyncio
    async def test_no_workflows(self, store):
        await store.save_document(make_quote("Q-1", valid_until=NOW + timedelta(days=3)))

        result = await notify_expiring_quotes(store, now=NOW)

        assert result == {"notifications_created": 0}


class TestNaiveTimestamps:
    """Dates stored without a timezone are read as UTC."""

    def test_document_dates_become_aware(self):
        invoice = Document(
            kind=DocumentKind.INVOICE,
            number="INV-1",
            user_id="user-1",
            status=InvoiceStatus.UNPAID,
            due_date=datetime(2024, 5, 1, 12, 0),
        )
        assert invoice.due_date == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_sweeps_accept_naive_dates(self, store):
        await store.save_workflow(Workflow(user_id="user-1", trigger_type=config.INVOICE_OVERDUE_TRIGGER))
        await store.save_workflow(Workflow(user_id="user-1", trigger_type=config.QUOTE_EXPIRING_TRIGGER))
        await store.save_document(Document(
            kind=DocumentKind.INVOICE,
            number="INV-1",
            user_id="user-1",
            client_name="PT Maju Jaya",
            status=InvoiceStatus.UNPAID,
            due_date=datetime(2024, 5, 9, 9, 0),
        ))
        await store.save_document(make_quote("Q-1", valid_until=datetime(2024, 5, 13, 12, 0)))

        overdue = await notify_overdue_invoices(store, now=NOW)
        expiring = await notify_expiring_quotes(store, now=NOW, days=3)

        assert overdue == {"notifications_created": 1}
        assert expiring == {"notifications_created": 1}
