# tasks/__init__.py
from tasks.reminders import notify_expiring_quotes, notify_overdue_invoices

__all__ = ["notify_expiring_quotes", "notify_overdue_invoices"]
