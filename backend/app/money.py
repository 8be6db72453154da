from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

from .config import settings
from .errors import ValidationError

MONEY_Q = Decimal("0.01")
QTY_Q = Decimal("0.001")


def d(v) -> Decimal:
    return Decimal(str(v or 0))


def q_money(v: Decimal) -> Decimal:
    return (v or Decimal("0")).quantize(MONEY_Q, rounding=ROUND_HALF_UP)


def _parse_decimal(raw, field: str, line_no: int) -> Decimal:
    try:
        value = Decimal(str(raw))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"line {line_no}: {field} is not a number")
    if not value.is_finite():
        raise ValidationError(f"line {line_no}: {field} is not a number")
    return value


def price_lines(lines: list[dict], tax_rate: Optional[Decimal] = None) -> tuple[list[dict], dict]:
    """
    Validate and price document lines.

    Every money amount is rounded half-up to the minor unit exactly once: each
    line total and the tax. Subtotal and total are plain sums of rounded
    values, so they always agree with the stored lines.

    Returns (priced_lines, totals) where each priced line is the input dict plus
    `line_no`, `quantity`, `unit_price` and `line_total`, and totals holds
    `subtotal`, `tax_amount`, `total_amount`.
    """
    if not lines:
        raise ValidationError("at least one line is required")
    rate = settings.tax_rate if tax_rate is None else Decimal(str(tax_rate))

    priced: list[dict] = []
    subtotal = Decimal("0.00")
    for idx, line in enumerate(lines, start=1):
        qty = _parse_decimal(line.get("quantity"), "quantity", idx)
        price = _parse_decimal(line.get("unit_price"), "unit_price", idx)
        if qty <= 0:
            raise ValidationError(f"line {idx}: quantity must be > 0")
        if price < 0:
            raise ValidationError(f"line {idx}: unit_price must be >= 0")
        if qty != qty.quantize(QTY_Q):
            raise ValidationError(f"line {idx}: quantity supports at most 3 decimals")
        price = q_money(price)
        line_total = q_money(qty * price)
        subtotal += line_total
        priced.append({**line, "line_no": idx, "quantity": qty, "unit_price": price, "line_total": line_total})

    tax_amount = q_money(subtotal * rate)
    totals = {
        "subtotal": subtotal,
        "tax_amount": tax_amount,
        "total_amount": subtotal + tax_amount,
    }
    return priced, totals
