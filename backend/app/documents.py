"""
Document issuance: service invoices, sales invoices and sales returns.

Each function runs inside the caller's transaction (`cur`) and does all of its
work there: number allocation, header insert, line inserts and dependent
updates (billable units, bookings, stock). Any failure propagates and the
caller's transaction rolls everything back.
"""

from decimal import Decimal
from typing import Optional

from .balances import apply_stock_delta, require_active_account
from .errors import AlreadyBilledError, ValidationError
from .jsonlog import json_log
from .money import price_lines, q_money
from .numbering import SALES_INVOICE, SALES_RETURN, SERVICE_INVOICE, get_series, insert_with_doc_no


def _log_issued(company_id: str, kind: str, doc: dict):
    json_log(
        "info",
        "document.issued",
        company_id=company_id,
        kind=kind,
        document_id=doc["id"],
        doc_no=doc["doc_no"],
        total_amount=doc["total_amount"],
    )


def _insert_service_invoice_lines(cur, invoice_id: str, lines: list[dict]) -> list[dict]:
    out = []
    for l in lines:
        cur.execute(
            """
            INSERT INTO service_invoice_lines
              (id, invoice_id, line_no, service_id, assignment_id, description, quantity, unit_price, line_total)
            VALUES
              (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id, line_no, service_id, assignment_id, description, quantity, unit_price, line_total
            """,
            (
                invoice_id,
                l["line_no"],
                l.get("service_id"),
                l.get("assignment_id"),
                l.get("description"),
                l["quantity"],
                l["unit_price"],
                l["line_total"],
            ),
        )
        out.append(cur.fetchone())
    return out


def _insert_service_invoice(
    cur,
    company_id: str,
    customer_id: str,
    lines: list[dict],
    totals: dict,
    booking_id: Optional[str],
    payment_method: Optional[str],
    notes: Optional[str],
) -> dict:
    if not customer_id:
        raise ValidationError("customer_id is required")

    def insert_row(c, doc_no: str) -> dict:
        c.execute(
            """
            INSERT INTO service_invoices
              (id, company_id, doc_no, customer_id, booking_id, subtotal, tax_amount, total_amount, payment_method, notes)
            VALUES
              (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id, doc_no, customer_id, booking_id, subtotal, tax_amount, total_amount, status, payment_method, notes, created_at
            """,
            (
                company_id,
                doc_no,
                customer_id,
                booking_id,
                totals["subtotal"],
                totals["tax_amount"],
                totals["total_amount"],
                payment_method,
                notes,
            ),
        )
        return c.fetchone()

    invoice = insert_with_doc_no(cur, company_id, SERVICE_INVOICE, insert_row)
    invoice["lines"] = _insert_service_invoice_lines(cur, invoice["id"], lines)
    return invoice


def issue_service_invoice(
    cur,
    company_id: str,
    customer_id: str,
    lines: list[dict],
    booking_id: Optional[str] = None,
    payment_method: Optional[str] = None,
    notes: Optional[str] = None,
) -> dict:
    priced, totals = price_lines(lines)

    if booking_id:
        cur.execute(
            """
            SELECT id, status
            FROM bookings
            WHERE company_id = %s AND id = %s
            FOR UPDATE
            """,
            (company_id, booking_id),
        )
        booking = cur.fetchone()
        if not booking:
            raise ValidationError("invalid booking_id")
        if booking["status"] != "open":
            raise AlreadyBilledError(f"booking is {booking['status']}")

    invoice = _insert_service_invoice(cur, company_id, customer_id, priced, totals, booking_id, payment_method, notes)

    if booking_id:
        cur.execute(
            """
            UPDATE bookings
            SET status = 'completed', updated_at = now()
            WHERE company_id = %s AND id = %s
            """,
            (company_id, booking_id),
        )

    _log_issued(company_id, "service_invoice", invoice)
    return invoice


def issue_service_invoice_from_assignments(
    cur,
    company_id: str,
    customer_id: str,
    assignment_ids: list[str],
    payment_method: Optional[str] = None,
    notes: Optional[str] = None,
) -> dict:
    wanted = list(dict.fromkeys(str(a) for a in (assignment_ids or [])))
    if not wanted:
        raise ValidationError("at least one assignment is required")

    # Lock the units so two invoices can never both see them as open.
    cur.execute(
        """
        SELECT a.id, a.customer_id, a.status, a.service_id, s.service_name, s.price
        FROM customer_assignments a
        JOIN services s ON s.id = a.service_id
        WHERE a.company_id = %s AND a.id = ANY(%s::uuid[])
        ORDER BY a.start_time, a.id
        FOR UPDATE OF a
        """,
        (company_id, wanted),
    )
    rows = cur.fetchall()
    found = {str(r["id"]) for r in rows}
    missing = [a for a in wanted if a not in found]
    if not rows:
        raise AlreadyBilledError("nothing to bill")
    if missing:
        raise AlreadyBilledError(f"nothing to bill for assignments: {', '.join(missing)}")
    billed = [str(r["id"]) for r in rows if r["status"] == "billed"]
    if billed:
        raise AlreadyBilledError(f"assignments already billed: {', '.join(billed)}")
    foreign = [str(r["id"]) for r in rows if str(r["customer_id"]) != str(customer_id)]
    if foreign:
        raise ValidationError(f"assignments belong to another customer: {', '.join(foreign)}")

    lines = [
        {
            "service_id": r["service_id"],
            "assignment_id": r["id"],
            "description": r["service_name"],
            "quantity": Decimal("1"),
            "unit_price": r["price"],
        }
        for r in rows
    ]
    priced, totals = price_lines(lines)
    invoice = _insert_service_invoice(cur, company_id, customer_id, priced, totals, None, payment_method, notes)

    cur.execute(
        """
        UPDATE customer_assignments
        SET status = 'billed',
            invoice_id = %s,
            end_time = COALESCE(end_time, now()),
            updated_at = now()
        WHERE company_id = %s AND id = ANY(%s::uuid[]) AND status = 'open'
        """,
        (invoice["id"], company_id, wanted),
    )
    if cur.rowcount != len(wanted):
        raise AlreadyBilledError("assignments changed while billing")

    _log_issued(company_id, "service_invoice", invoice)
    return invoice


def _insert_item_lines(cur, table: str, parent_col: str, parent_id: str, lines: list[dict]) -> list[dict]:
    out = []
    for l in lines:
        cur.execute(
            f"""
            INSERT INTO {table}
              (id, {parent_col}, line_no, item_id, description, quantity, unit_price, line_total)
            VALUES
              (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s)
            RETURNING id, line_no, item_id, description, quantity, unit_price, line_total
            """,
            (parent_id, l["line_no"], l["item_id"], l.get("description"), l["quantity"], l["unit_price"], l["line_total"]),
        )
        out.append(cur.fetchone())
    return out


def _require_item_ids(lines: list[dict]):
    for idx, l in enumerate(lines, start=1):
        if not l.get("item_id"):
            raise ValidationError(f"line {idx}: item_id is required")


def issue_sales_invoice(
    cur,
    company_id: str,
    customer_name: str,
    lines: list[dict],
    due_date=None,
    notes: Optional[str] = None,
) -> dict:
    customer_name = (customer_name or "").strip()
    if not customer_name:
        raise ValidationError("customer_name is required")
    _require_item_ids(lines)
    priced, totals = price_lines(lines)

    def insert_row(c, doc_no: str) -> dict:
        c.execute(
            """
            INSERT INTO sales_invoices
              (id, company_id, doc_no, customer_name, subtotal, tax_amount, total_amount, due_date, notes)
            VALUES
              (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id, doc_no, customer_name, subtotal, tax_amount, total_amount, status, due_date, notes, created_at
            """,
            (
                company_id,
                doc_no,
                customer_name,
                totals["subtotal"],
                totals["tax_amount"],
                totals["total_amount"],
                due_date,
                notes,
            ),
        )
        return c.fetchone()

    invoice = insert_with_doc_no(cur, company_id, SALES_INVOICE, insert_row)
    invoice["lines"] = _insert_item_lines(cur, "sales_invoice_lines", "invoice_id", invoice["id"], priced)
    # Stable lock order across concurrent documents touching the same items.
    for l in sorted(priced, key=lambda x: str(x["item_id"])):
        apply_stock_delta(cur, company_id, l["item_id"], -l["quantity"], "sales_invoice", invoice["id"])

    _log_issued(company_id, "sales_invoice", invoice)
    return invoice


def issue_sales_return(
    cur,
    company_id: str,
    customer_name: str,
    lines: list[dict],
    invoice_id: Optional[str] = None,
    return_date=None,
    refund_amount=None,
    refund_method: Optional[str] = None,
    financial_account_id: Optional[str] = None,
    reason: Optional[str] = None,
    notes: Optional[str] = None,
) -> dict:
    customer_name = (customer_name or "").strip()
    if not customer_name:
        raise ValidationError("customer_name is required")
    _require_item_ids(lines)
    priced, totals = price_lines(lines)

    refund = q_money(Decimal(str(refund_amount or 0)))
    if refund < 0:
        raise ValidationError("refund_amount must be >= 0")
    if refund > totals["total_amount"]:
        raise ValidationError("refund_amount cannot exceed return total")
    if financial_account_id:
        require_active_account(cur, company_id, financial_account_id)

    def insert_row(c, doc_no: str) -> dict:
        c.execute(
            """
            INSERT INTO sales_returns
              (id, company_id, doc_no, invoice_id, customer_name, return_date,
               subtotal, tax_amount, total_amount, refund_amount, refund_method,
               financial_account_id, status, reason, notes)
            VALUES
              (gen_random_uuid(), %s, %s, %s, %s, COALESCE(%s, current_date),
               %s, %s, %s, %s, %s,
               %s, 'pending', %s, %s)
            RETURNING id, doc_no, invoice_id, customer_name, return_date, subtotal, tax_amount,
                      total_amount, refund_amount, refund_method, financial_account_id, status,
                      reason, notes, created_at
            """,
            (
                company_id,
                doc_no,
                invoice_id,
                customer_name,
                return_date,
                totals["subtotal"],
                totals["tax_amount"],
                totals["total_amount"],
                refund,
                refund_method,
                financial_account_id,
                reason,
                notes,
            ),
        )
        return c.fetchone()

    ret = insert_with_doc_no(cur, company_id, SALES_RETURN, insert_row)
    ret["lines"] = _insert_item_lines(cur, "sales_return_lines", "return_id", ret["id"], priced)

    _log_issued(company_id, "sales_return", ret)
    return ret


def issue_document(cur, company_id: str, series: str, lines: list[dict], linked_refs: Optional[dict] = None, **header) -> dict:
    """
    Issue a document of `series` ("SRV-", "INV-", "RET-").

    `linked_refs` carries the originating records: `assignment_ids` (service
    invoice billed from assignments, `lines` must then be empty), `booking_id`
    (service invoice) or `invoice_id` (return).
    """
    s = get_series(series)
    refs = dict(linked_refs or {})

    if s is SERVICE_INVOICE:
        if refs.get("assignment_ids"):
            if lines:
                raise ValidationError("lines are derived from assignments; do not pass both")
            return issue_service_invoice_from_assignments(cur, company_id, assignment_ids=refs["assignment_ids"], **header)
        return issue_service_invoice(cur, company_id, lines=lines, booking_id=refs.get("booking_id"), **header)
    if s is SALES_INVOICE:
        return issue_sales_invoice(cur, company_id, lines=lines, **header)
    return issue_sales_return(cur, company_id, lines=lines, invoice_id=refs.get("invoice_id"), **header)
