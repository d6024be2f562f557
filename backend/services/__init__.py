# services/__init__.py
# ============================================================================
# BILLING RECONCILIATION SERVICE — SERVICES MODULE
# ============================================================================
# Financial totals, Stripe checkout and Midtrans Snap transactions
# ============================================================================

from services.totals import (
    to_number,
    item_total,
    subtotal,
    total,
    document_totals,
    format_currency,
)

__all__ = [
    # Totals
    "to_number",
    "item_total",
    "subtotal",
    "total",
    "document_totals",
    "format_currency",
]
