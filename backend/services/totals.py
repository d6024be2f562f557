"""
Financial totals for invoices and quotes.

Pure functions shared by checkout creation, the totals endpoint and any
renderer. Missing or non-numeric inputs count as zero so a half-filled
document never produces NaN.
"""

import math
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Iterable, Mapping


def to_number(value: Any) -> float:
    """Coerce to a finite float; anything else becomes 0"""
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float, Decimal)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        try:
            number = float(text)
        except ValueError:
            return 0.0
    else:
        return 0.0
    return number if math.isfinite(number) else 0.0


def item_total(quantity: Any, unit_price: Any) -> float:
    total = to_number(quantity) * to_number(unit_price)
    # inf * 0 cannot happen after coercion, but overflow can
    return total if math.isfinite(total) else 0.0


def _field(item: Any, name: str) -> Any:
    if isinstance(item, Mapping):
        return item.get(name)
    return getattr(item, name, None)


def subtotal(items: Iterable[Any]) -> float:
    """Sum of item totals; accepts LineItem models or plain mappings"""
    return math.fsum(
        item_total(_field(item, "quantity"), _field(item, "unit_price"))
        for item in items or ()
    )


def total(subtotal_amount: Any, discount: Any = 0, tax: Any = 0) -> float:
    return to_number(subtotal_amount) - to_number(discount) + to_number(tax)


def document_totals(document) -> dict:
    """Per-item and aggregate amounts for a Document"""
    items = [item_total(i.quantity, i.unit_price) for i in document.items]
    sub = subtotal(document.items)
    return {
        "items": items,
        "subtotal": sub,
        "discount": to_number(document.discount),
        "tax": to_number(document.tax),
        "total": total(sub, document.discount, document.tax),
    }


def format_currency(amount: Any, fraction_digits: int = 0) -> str:
    """
    Rupiah formatting as the id-ID locale renders it.

    >>> format_currency(1250000)
    'Rp 1.250.000'
    >>> format_currency(-5000.5, fraction_digits=2)
    '-Rp 5.000,50'
    """
    quantum = Decimal(1).scaleb(-fraction_digits)
    value = Decimal(str(to_number(amount))).quantize(quantum, rounding=ROUND_HALF_UP)
    sign = "-" if value < 0 else ""
    whole, _, fraction = f"{abs(value):.{fraction_digits}f}".partition(".")
    grouped = f"{int(whole):,}".replace(",", ".")
    text = f"{grouped},{fraction}" if fraction else grouped
    return f"{sign}Rp {text}"
