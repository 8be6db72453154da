"""
Sales return lifecycle: pending -> processed | cancelled.

`process_return` is the only place where inventory and cash move together
outside of a sale. Restock, refund debit and the status flip share the
caller's transaction; any failure leaves the return pending with stock and
balances untouched.
"""

from decimal import Decimal

from .balances import apply_account_delta, apply_stock_delta, require_active_account
from .errors import InvalidStateError, NotFoundError, ValidationError
from .jsonlog import json_log
from .money import q_money

# Header fields a pending return may still change. Totals, lines and doc_no are fixed at issue time.
EDITABLE_RETURN_FIELDS = ("customer_name", "return_date", "reason", "notes", "refund_method", "financial_account_id", "refund_amount")


def _lock_return(cur, company_id: str, return_id: str) -> dict:
    cur.execute(
        """
        SELECT id, doc_no, status, financial_account_id, refund_amount, total_amount
        FROM sales_returns
        WHERE company_id = %s AND id = %s
        FOR UPDATE
        """,
        (company_id, return_id),
    )
    row = cur.fetchone()
    if not row:
        raise NotFoundError("goods return not found")
    return row


def _require_pending(ret: dict, action: str):
    if ret["status"] != "pending":
        raise InvalidStateError(f"cannot {action} a {ret['status']} return")


def process_return(cur, company_id: str, return_id: str) -> dict:
    ret = _lock_return(cur, company_id, return_id)
    _require_pending(ret, "process")

    cur.execute(
        """
        SELECT item_id, quantity
        FROM sales_return_lines
        WHERE return_id = %s
        ORDER BY item_id, line_no
        """,
        (return_id,),
    )
    lines = cur.fetchall()
    for l in lines:
        apply_stock_delta(cur, company_id, l["item_id"], l["quantity"], "sales_return", return_id)

    refund = ret["refund_amount"] or Decimal("0")
    if ret["financial_account_id"] and refund > 0:
        # No floor: a shortfall is left visible for reconciliation.
        apply_account_delta(
            cur,
            company_id,
            ret["financial_account_id"],
            -refund,
            "refund",
            return_id,
            memo=f"refund {ret['doc_no']}",
        )

    cur.execute(
        """
        UPDATE sales_returns
        SET status = 'processed', processed_at = now(), updated_at = now()
        WHERE company_id = %s AND id = %s AND status = 'pending'
        """,
        (company_id, return_id),
    )

    json_log(
        "info",
        "return.processed",
        company_id=company_id,
        return_id=return_id,
        doc_no=ret["doc_no"],
        lines_restocked=len(lines),
        refund_amount=refund if ret["financial_account_id"] else Decimal("0"),
    )
    return {"return_id": return_id, "doc_no": ret["doc_no"], "lines_restocked": len(lines)}


def cancel_return(cur, company_id: str, return_id: str) -> dict:
    ret = _lock_return(cur, company_id, return_id)
    _require_pending(ret, "cancel")
    cur.execute(
        """
        UPDATE sales_returns
        SET status = 'cancelled', updated_at = now()
        WHERE company_id = %s AND id = %s
        RETURNING id, doc_no, status
        """,
        (company_id, return_id),
    )
    return cur.fetchone()


def update_return(cur, company_id: str, return_id: str, patch: dict) -> dict:
    unknown = sorted(set(patch) - set(EDITABLE_RETURN_FIELDS))
    if unknown:
        raise ValidationError(f"fields cannot be updated: {', '.join(unknown)}")
    ret = _lock_return(cur, company_id, return_id)
    _require_pending(ret, "update")
    if not patch:
        return ret

    fields = []
    params = []
    for key in EDITABLE_RETURN_FIELDS:
        if key not in patch:
            continue
        value = patch[key]
        if key == "customer_name":
            value = (value or "").strip()
            if not value:
                raise ValidationError("customer_name cannot be empty")
        elif key == "refund_amount":
            value = q_money(Decimal(str(value or 0)))
            if value < 0 or value > ret["total_amount"]:
                raise ValidationError("refund_amount must be between 0 and the return total")
        elif key == "financial_account_id" and value:
            require_active_account(cur, company_id, value)
        fields.append(f"{key} = %s")
        params.append(value)

    params.extend([company_id, return_id])
    cur.execute(
        f"""
        UPDATE sales_returns
        SET {", ".join(fields)}, updated_at = now()
        WHERE company_id = %s AND id = %s
        RETURNING id, doc_no, customer_name, return_date, total_amount, refund_amount,
                  refund_method, financial_account_id, status, reason, notes
        """,
        params,
    )
    return cur.fetchone()


def delete_return(cur, company_id: str, return_id: str):
    ret = _lock_return(cur, company_id, return_id)
    _require_pending(ret, "delete")
    # Lines go with the header (ON DELETE CASCADE).
    cur.execute("DELETE FROM sales_returns WHERE company_id = %s AND id = %s", (company_id, return_id))


def get_return(cur, company_id: str, return_id: str) -> dict:
    cur.execute(
        """
        SELECT id, doc_no, invoice_id, customer_name, return_date, subtotal, tax_amount, total_amount,
               refund_amount, refund_method, financial_account_id, status, reason, notes,
               processed_at, created_at, updated_at
        FROM sales_returns
        WHERE company_id = %s AND id = %s
        """,
        (company_id, return_id),
    )
    ret = cur.fetchone()
    if not ret:
        raise NotFoundError("goods return not found")
    cur.execute(
        """
        SELECT id, line_no, item_id, description, quantity, unit_price, line_total
        FROM sales_return_lines
        WHERE return_id = %s
        ORDER BY line_no
        """,
        (return_id,),
    )
    ret["lines"] = cur.fetchall()
    return ret


def return_stats(cur, company_id: str) -> dict:
    cur.execute(
        """
        SELECT COUNT(*) AS total_returns,
               COALESCE(SUM(refund_amount), 0) AS total_refund_amount,
               COUNT(*) FILTER (WHERE status = 'pending') AS pending_returns,
               COUNT(*) FILTER (WHERE status = 'processed') AS processed_returns,
               COUNT(*) FILTER (WHERE status = 'cancelled') AS cancelled_returns
        FROM sales_returns
        WHERE company_id = %s
        """,
        (company_id,),
    )
    return cur.fetchone()
