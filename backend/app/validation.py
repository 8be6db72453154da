from __future__ import annotations

from decimal import Decimal
from typing import Annotated, Literal

from pydantic import BeforeValidator, Field, StringConstraints


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower().replace("-", "_").replace(" ", "_")


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


# Canonical codes mirror Postgres enums in `backend/db/migrations/001_init.sql`.
AccountType = Annotated[Literal["cash", "bank", "mobile_money"], BeforeValidator(_to_lower_str)]
ReturnStatus = Annotated[Literal["pending", "processed", "cancelled"], BeforeValidator(_to_lower_str)]
SeriesPrefix = Annotated[Literal["SRV-", "INV-", "RET-"], BeforeValidator(_to_upper_str)]

# Keep a tight, safe character set so methods are stable identifiers ("cash", "mpesa", "bank_transfer").
PaymentMethod = Annotated[
    str,
    BeforeValidator(_to_lower_str),
    StringConstraints(min_length=1, max_length=32, pattern=r"^[a-z0-9][a-z0-9_]*$"),
]

Quantity = Annotated[Decimal, Field(gt=0, max_digits=18, decimal_places=3)]
Money = Annotated[Decimal, Field(ge=0, max_digits=18, decimal_places=2)]
