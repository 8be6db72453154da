"""
Per-company sequential document numbers ("SRV-00001", "RET-00002", ...).

Allocation protocol, all inside the caller's transaction:

1. take a transaction-scoped advisory lock keyed by (company, series), so
   allocations for one series queue up while other companies and other series
   proceed untouched;
2. read the highest number already issued in the series and propose the next;
3. insert the document row inside a savepoint;
4. when the insert trips the series' unique constraint (a concurrent writer the
   lock did not cover, or a manually numbered row), roll back only the
   savepoint, bump the candidate and try again, up to a fixed budget.

The savepoint keeps everything the transaction did before the insert; the
whole transaction is never replayed.
"""

import re
from dataclasses import dataclass
from typing import Callable, Optional

from psycopg.errors import UniqueViolation

from .config import settings
from .errors import AllocationExhaustedError, NotFoundError, ValidationError
from .jsonlog import json_log


@dataclass(frozen=True)
class DocumentSeries:
    prefix: str
    table: str
    constraint: str


SERVICE_INVOICE = DocumentSeries("SRV-", "service_invoices", "service_invoices_company_doc_no_key")
SALES_INVOICE = DocumentSeries("INV-", "sales_invoices", "sales_invoices_company_doc_no_key")
SALES_RETURN = DocumentSeries("RET-", "sales_returns", "sales_returns_company_doc_no_key")

SERIES = {s.prefix: s for s in (SERVICE_INVOICE, SALES_INVOICE, SALES_RETURN)}


def get_series(prefix: str) -> DocumentSeries:
    s = SERIES.get((prefix or "").strip().upper())
    if not s:
        raise ValidationError(f"unknown document series: {prefix!r}")
    return s


def format_doc_no(prefix: str, count: int, width: Optional[int] = None) -> str:
    return f"{prefix}{count:0{width or settings.doc_no_width}d}"


def parse_doc_no(prefix: str, doc_no: Optional[str]) -> Optional[int]:
    if not doc_no or not doc_no.startswith(prefix):
        return None
    suffix = doc_no[len(prefix):]
    if not suffix.isdigit():
        return None
    return int(suffix)


def series_lock_key(company_id: str, series: DocumentSeries) -> str:
    return f"{company_id}:{series.prefix}"


def lock_series(cur, company_id: str, series: DocumentSeries):
    # Released automatically at COMMIT/ROLLBACK of the surrounding transaction.
    cur.execute(
        "SELECT pg_advisory_xact_lock(hashtextextended(%s, 0))",
        (series_lock_key(company_id, series),),
    )


def last_issued_count(cur, company_id: str, series: DocumentSeries) -> int:
    # Zero-padding makes string order match numeric order until a number
    # outgrows the pad width; ordering by length first keeps that case right.
    cur.execute(
        f"""
        SELECT doc_no
        FROM {series.table}
        WHERE company_id = %s
          AND doc_no ~ %s
        ORDER BY char_length(doc_no) DESC, doc_no DESC
        LIMIT 1
        """,
        (company_id, "^" + re.escape(series.prefix) + "[0-9]+$"),
    )
    row = cur.fetchone()
    if not row:
        return 0
    return parse_doc_no(series.prefix, row["doc_no"]) or 0


def _violated_constraint(ex: UniqueViolation) -> Optional[str]:
    diag = getattr(ex, "diag", None)
    return getattr(diag, "constraint_name", None)


def insert_with_doc_no(
    cur,
    company_id: str,
    series: DocumentSeries,
    insert_row: Callable[[object, str], dict],
) -> dict:
    """
    Allocate the next number of `series` and insert the owning row with it.

    `insert_row(cur, doc_no)` must execute the INSERT and return the inserted
    row. It runs inside a savepoint and may be called more than once, so it
    must not do anything besides the insert.
    """
    conn = cur.connection
    lock_series(cur, company_id, series)
    candidate = last_issued_count(cur, company_id, series) + 1
    max_attempts = settings.doc_no_max_attempts

    for attempt in range(1, max_attempts + 1):
        doc_no = format_doc_no(series.prefix, candidate)
        try:
            with conn.transaction():
                return insert_row(cur, doc_no)
        except UniqueViolation as ex:
            if _violated_constraint(ex) != series.constraint:
                raise
            json_log(
                "warning",
                "numbering.collision",
                company_id=company_id,
                series=series.prefix,
                doc_no=doc_no,
                attempt=attempt,
            )
            candidate += 1

    json_log(
        "error",
        "numbering.exhausted",
        company_id=company_id,
        series=series.prefix,
        attempts=max_attempts,
        last_candidate=format_doc_no(series.prefix, candidate - 1),
    )
    raise AllocationExhaustedError(
        f"could not allocate a {series.prefix} number after {max_attempts} attempts"
    )


def require_document(cur, company_id: str, doc_no: Optional[str]) -> str:
    """Normalize `doc_no` and check that the company has issued it in its series."""
    doc_no = (doc_no or "").strip().upper()
    prefix, sep, _ = doc_no.partition("-")
    series = get_series(prefix + sep)
    cur.execute(
        f"SELECT 1 FROM {series.table} WHERE company_id = %s AND doc_no = %s",
        (company_id, doc_no),
    )
    if not cur.fetchone():
        raise NotFoundError(f"document not found: {doc_no}")
    return doc_no
