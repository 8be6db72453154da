"""
Signed-delta mutations for money and stock.

Balances and stock quantities are only ever moved with a single in-place
`UPDATE ... SET x = x + delta` plus a movement row recording the cause, both in
the caller's transaction. Concurrent writers on one account queue on the row
lock instead of overwriting each other, and
`current_balance = opening_balance + sum(account_movements.amount)` holds after
every commit.
"""

from decimal import Decimal
from typing import Optional

from .errors import NotFoundError, StateConflictError, ValidationError
from .money import q_money
from .numbering import require_document

ACCOUNT_SOURCE_TYPES = {"payment", "refund", "adjustment"}


def apply_account_delta(
    cur,
    company_id: str,
    account_id: str,
    delta: Decimal,
    source_type: str,
    source_id: Optional[str],
    memo: Optional[str] = None,
) -> Decimal:
    if source_type not in ACCOUNT_SOURCE_TYPES:
        raise ValueError(f"unsupported account movement source: {source_type}")
    delta = q_money(delta)
    cur.execute(
        """
        UPDATE financial_accounts
        SET current_balance = current_balance + %s,
            updated_at = now()
        WHERE company_id = %s AND id = %s
        RETURNING current_balance
        """,
        (delta, company_id, account_id),
    )
    row = cur.fetchone()
    if not row:
        raise NotFoundError("financial account not found")
    cur.execute(
        """
        INSERT INTO account_movements (id, company_id, account_id, source_type, source_id, amount, memo)
        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s)
        """,
        (company_id, account_id, source_type, source_id, delta, memo),
    )
    return row["current_balance"]


def apply_stock_delta(cur, company_id: str, item_id: str, qty: Decimal, source_type: str, source_id: str) -> Decimal:
    cur.execute(
        """
        UPDATE items
        SET stock_quantity = stock_quantity + %s,
            updated_at = now()
        WHERE company_id = %s AND id = %s
        RETURNING stock_quantity
        """,
        (qty, company_id, item_id),
    )
    row = cur.fetchone()
    if not row:
        raise NotFoundError(f"item not found: {item_id}")
    cur.execute(
        """
        INSERT INTO stock_moves (id, company_id, item_id, qty, source_type, source_id)
        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s)
        """,
        (company_id, item_id, qty, source_type, source_id),
    )
    return row["stock_quantity"]


def require_active_account(cur, company_id: str, account_id: str) -> dict:
    cur.execute(
        """
        SELECT id, is_active
        FROM financial_accounts
        WHERE company_id = %s AND id = %s
        """,
        (company_id, account_id),
    )
    row = cur.fetchone()
    if not row:
        raise ValidationError("invalid financial_account_id")
    if not row["is_active"]:
        raise ValidationError("financial account is inactive")
    return row


def record_payment(
    cur,
    company_id: str,
    account_id: str,
    amount: Decimal,
    method: str,
    reference: Optional[str] = None,
    doc_no: Optional[str] = None,
) -> dict:
    amount = q_money(amount)
    if amount <= 0:
        raise ValidationError("amount must be > 0")
    require_active_account(cur, company_id, account_id)
    if doc_no is not None:
        doc_no = require_document(cur, company_id, doc_no)
    cur.execute(
        """
        INSERT INTO invoice_payments (id, company_id, account_id, doc_no, amount, method, reference)
        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s)
        RETURNING id, account_id, doc_no, amount, method, reference, paid_at
        """,
        (company_id, account_id, doc_no, amount, method, reference),
    )
    payment = cur.fetchone()
    balance = apply_account_delta(
        cur, company_id, account_id, amount, "payment", payment["id"], memo=reference or method
    )
    return {**payment, "current_balance": balance}


def link_payment(cur, company_id: str, payment_id: str, doc_no: str) -> dict:
    doc_no = require_document(cur, company_id, doc_no)
    cur.execute(
        """
        UPDATE invoice_payments
        SET doc_no = %s
        WHERE company_id = %s AND id = %s AND doc_no IS NULL
        RETURNING id, doc_no
        """,
        (doc_no, company_id, payment_id),
    )
    row = cur.fetchone()
    if row:
        return row
    cur.execute(
        "SELECT doc_no FROM invoice_payments WHERE company_id = %s AND id = %s",
        (company_id, payment_id),
    )
    existing = cur.fetchone()
    if not existing:
        raise NotFoundError("payment not found")
    raise StateConflictError(f"payment already linked to {existing['doc_no']}")


def set_account_balance(cur, company_id: str, account_id: str, new_balance: Decimal, memo: Optional[str] = None) -> Decimal:
    # Administrative correction: still a recorded delta against the locked row.
    cur.execute(
        """
        SELECT current_balance
        FROM financial_accounts
        WHERE company_id = %s AND id = %s
        FOR UPDATE
        """,
        (company_id, account_id),
    )
    row = cur.fetchone()
    if not row:
        raise NotFoundError("financial account not found")
    delta = q_money(new_balance) - row["current_balance"]
    if delta == 0:
        return row["current_balance"]
    return apply_account_delta(cur, company_id, account_id, delta, "adjustment", None, memo=memo or "balance adjustment")


def delete_account(cur, company_id: str, account_id: str):
    cur.execute(
        "SELECT 1 FROM financial_accounts WHERE company_id = %s AND id = %s FOR UPDATE",
        (company_id, account_id),
    )
    if not cur.fetchone():
        raise NotFoundError("financial account not found")
    # Movements carry the history behind current_balance; deactivate such accounts instead.
    for table, column, what in (
        ("invoice_payments", "account_id", "payment transactions"),
        ("account_movements", "account_id", "balance movements"),
        ("sales_returns", "financial_account_id", "goods returns"),
    ):
        cur.execute(
            f"SELECT 1 FROM {table} WHERE company_id = %s AND {column} = %s LIMIT 1",
            (company_id, account_id),
        )
        if cur.fetchone():
            raise StateConflictError(f"cannot delete account that has {what}")
    cur.execute(
        "DELETE FROM financial_accounts WHERE company_id = %s AND id = %s",
        (company_id, account_id),
    )
