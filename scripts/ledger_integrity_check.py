#!/usr/bin/env python3
"""
Read-only ledger integrity checks for one company.

Verifies the invariants the billing core maintains:
- financial account balance == opening balance + sum(account movements)
- document total == sum(line totals) + tax, and subtotal == sum(line totals)
- document numbers per series have no duplicates; gaps are reported (informational)

Safe to run against production DBs.
"""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from decimal import Decimal


# Allow running from repo root without installing as a package.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from backend.app.db import get_conn, set_company_context  # noqa: E402
from backend.app.money import d  # noqa: E402
from backend.app.numbering import SERIES, parse_doc_no  # noqa: E402


EPS = Decimal("0.005")

# (table, lines table, parent column)
DOCUMENT_TABLES = (
    ("service_invoices", "service_invoice_lines", "invoice_id"),
    ("sales_invoices", "sales_invoice_lines", "invoice_id"),
    ("sales_returns", "sales_return_lines", "return_id"),
)


@dataclass
class Finding:
    kind: str
    id: str
    ref: str
    message: str
    blocking: bool = True


def _parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser()
    p.add_argument("--company-id", default=os.environ.get("COMPANY_ID") or "", help="Company UUID (or env COMPANY_ID)")
    p.add_argument("--limit", type=int, default=200, help="Rows per check (default: 200)")
    p.add_argument("--strict-gaps", action="store_true", help="Treat numbering gaps as failures")
    return p.parse_args()


def check_account_balances(company_id: str, limit: int) -> list[Finding]:
    findings: list[Finding] = []
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT a.id, a.account_name, a.opening_balance, a.current_balance,
                       a.opening_balance + COALESCE(SUM(m.amount), 0) AS derived_balance
                FROM financial_accounts a
                LEFT JOIN account_movements m ON m.account_id = a.id AND m.company_id = a.company_id
                WHERE a.company_id = %s
                GROUP BY a.id, a.account_name, a.opening_balance, a.current_balance
                HAVING a.current_balance <> a.opening_balance + COALESCE(SUM(m.amount), 0)
                ORDER BY a.account_name
                LIMIT %s
                """,
                (company_id, limit),
            )
            for r in cur.fetchall():
                got = d(r["current_balance"])
                exp = d(r["derived_balance"])
                findings.append(
                    Finding(
                        kind="account_balance_drift",
                        id=str(r["id"]),
                        ref=str(r["account_name"]),
                        message=f"balance {got} but opening + movements = {exp} (delta {got - exp})",
                    )
                )
    return findings


def check_document_totals(company_id: str, limit: int) -> list[Finding]:
    findings: list[Finding] = []
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            for table, lines_table, parent_col in DOCUMENT_TABLES:
                cur.execute(
                    f"""
                    SELECT h.id, h.doc_no, h.subtotal, h.tax_amount, h.total_amount,
                           COALESCE(SUM(l.line_total), 0) AS lines_total
                    FROM {table} h
                    LEFT JOIN {lines_table} l ON l.{parent_col} = h.id
                    WHERE h.company_id = %s
                    GROUP BY h.id, h.doc_no, h.subtotal, h.tax_amount, h.total_amount
                    ORDER BY h.created_at DESC
                    LIMIT %s
                    """,
                    (company_id, limit),
                )
                for r in cur.fetchall():
                    subtotal = d(r["subtotal"])
                    lines_total = d(r["lines_total"])
                    exp_total = subtotal + d(r["tax_amount"])
                    got_total = d(r["total_amount"])
                    if abs(subtotal - lines_total) > EPS:
                        findings.append(
                            Finding(
                                kind=f"{table}_subtotal_mismatch",
                                id=str(r["id"]),
                                ref=str(r["doc_no"]),
                                message=f"subtotal {subtotal} but lines sum to {lines_total}",
                            )
                        )
                    if abs(got_total - exp_total) > EPS:
                        findings.append(
                            Finding(
                                kind=f"{table}_total_mismatch",
                                id=str(r["id"]),
                                ref=str(r["doc_no"]),
                                message=f"total {got_total} but subtotal + tax = {exp_total}",
                            )
                        )
    return findings


def check_numbering(company_id: str, strict_gaps: bool) -> list[Finding]:
    findings: list[Finding] = []
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            for series in SERIES.values():
                cur.execute(
                    f"SELECT doc_no FROM {series.table} WHERE company_id = %s",
                    (company_id,),
                )
                seen: dict[int, int] = {}
                for r in cur.fetchall():
                    n = parse_doc_no(series.prefix, r["doc_no"])
                    if n is not None:
                        seen[n] = seen.get(n, 0) + 1
                for n, count in sorted(seen.items()):
                    if count > 1:
                        findings.append(
                            Finding(
                                kind="duplicate_doc_no",
                                id=series.table,
                                ref=f"{series.prefix}{n}",
                                message=f"number used {count} times",
                            )
                        )
                if not seen:
                    continue
                missing = sorted(set(range(1, max(seen) + 1)) - set(seen))
                if missing:
                    preview = ", ".join(str(m) for m in missing[:20])
                    findings.append(
                        Finding(
                            kind="numbering_gap",
                            id=series.table,
                            ref=series.prefix,
                            message=f"{len(missing)} missing number(s): {preview}",
                            blocking=strict_gaps,
                        )
                    )
    return findings


def main() -> int:
    args = _parse_args()
    company_id = (args.company_id or "").strip()
    if not company_id:
        print("Missing --company-id (or env COMPANY_ID).", file=sys.stderr)
        return 2
    limit = max(1, min(int(args.limit or 200), 5000))

    findings: list[Finding] = []
    findings.extend(check_account_balances(company_id, limit))
    findings.extend(check_document_totals(company_id, limit))
    findings.extend(check_numbering(company_id, args.strict_gaps))

    if not findings:
        print("OK: no integrity issues found.")
        return 0

    print(f"Found {len(findings)} issue(s):")
    for f in findings[:200]:
        tag = "" if f.blocking else " [info]"
        print(f"- {f.kind}{tag}: {f.ref} ({f.id}) -> {f.message}")
    if len(findings) > 200:
        print(f"... plus {len(findings) - 200} more")
    return 1 if any(f.blocking for f in findings) else 0


if __name__ == "__main__":
    raise SystemExit(main())
