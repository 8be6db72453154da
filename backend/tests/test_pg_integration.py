"""
End-to-end checks against a real PostgreSQL (set TEST_DATABASE_URL).

Each test gets its own schema with the migration applied; see `pg_connect`
in conftest.py.
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from backend.app import settlement
from backend.app.documents import issue_sales_return, issue_service_invoice, issue_service_invoice_from_assignments
from backend.app.errors import AlreadyBilledError, InvalidStateError
from backend.app.settlement import process_return


def _seed(conn) -> dict:
    with conn.transaction():
        with conn.cursor() as cur:
            cur.execute("INSERT INTO companies (name) VALUES ('Tenant 7') RETURNING id")
            company_id = str(cur.fetchone()["id"])
            cur.execute("INSERT INTO companies (name) VALUES ('Tenant 8') RETURNING id")
            other_company_id = str(cur.fetchone()["id"])
            cur.execute(
                "INSERT INTO service_customers (company_id, name) VALUES (%s, 'Ann') RETURNING id",
                (company_id,),
            )
            customer_id = str(cur.fetchone()["id"])
            cur.execute(
                "INSERT INTO service_customers (company_id, name) VALUES (%s, 'Bob') RETURNING id",
                (other_company_id,),
            )
            other_customer_id = str(cur.fetchone()["id"])
            cur.execute(
                """
                INSERT INTO items (company_id, sku, name, stock_quantity)
                VALUES (%s, 'A', 'Item A', 10), (%s, 'B', 'Item B', 4)
                RETURNING id
                """,
                (company_id, company_id),
            )
            item_a, item_b = [str(r["id"]) for r in cur.fetchall()]
            cur.execute(
                """
                INSERT INTO financial_accounts
                  (company_id, account_name, account_type, opening_balance, current_balance)
                VALUES (%s, 'Till', 'cash', 1000, 1000)
                RETURNING id
                """,
                (company_id,),
            )
            account_id = str(cur.fetchone()["id"])
            cur.execute(
                "INSERT INTO services (company_id, service_name, price) VALUES (%s, 'Haircut', 40) RETURNING id",
                (company_id,),
            )
            service_id = str(cur.fetchone()["id"])
    return {
        "company_id": company_id,
        "other_company_id": other_company_id,
        "customer_id": customer_id,
        "other_customer_id": other_customer_id,
        "item_a": item_a,
        "item_b": item_b,
        "account_id": account_id,
        "service_id": service_id,
    }


def _issue_srv(conn, company_id, customer_id) -> str:
    with conn.transaction():
        with conn.cursor() as cur:
            inv = issue_service_invoice(
                cur, company_id, customer_id, [{"description": "Wash", "quantity": 1, "unit_price": "10"}]
            )
    return inv["doc_no"]


def _create_return(conn, ids, refund="200") -> str:
    with conn.transaction():
        with conn.cursor() as cur:
            ret = issue_sales_return(
                cur,
                ids["company_id"],
                "Walk-in",
                [
                    {"item_id": ids["item_a"], "quantity": 3, "unit_price": "60"},
                    {"item_id": ids["item_b"], "quantity": 1, "unit_price": "40"},
                ],
                refund_amount=refund,
                financial_account_id=ids["account_id"],
            )
    return str(ret["id"])


def _snapshot(conn, ids, return_id) -> dict:
    with conn.cursor() as cur:
        cur.execute("SELECT id, stock_quantity FROM items WHERE company_id = %s", (ids["company_id"],))
        stock = {str(r["id"]): r["stock_quantity"] for r in cur.fetchall()}
        cur.execute("SELECT current_balance FROM financial_accounts WHERE id = %s", (ids["account_id"],))
        balance = cur.fetchone()["current_balance"]
        cur.execute("SELECT status::text AS status FROM sales_returns WHERE id = %s", (return_id,))
        status = cur.fetchone()["status"]
    conn.commit()
    return {"a": stock[ids["item_a"]], "b": stock[ids["item_b"]], "balance": balance, "status": status}


def test_fresh_tenant_numbers_start_at_one(pg_connect):
    conn = pg_connect()
    ids = _seed(conn)
    assert _issue_srv(conn, ids["company_id"], ids["customer_id"]) == "SRV-00001"
    assert _issue_srv(conn, ids["company_id"], ids["customer_id"]) == "SRV-00002"
    assert _issue_srv(conn, ids["other_company_id"], ids["other_customer_id"]) == "SRV-00001"


def test_concurrent_issuance_is_distinct_and_persisted(pg_connect):
    ids = _seed(pg_connect())
    n = 20
    conns = [pg_connect() for _ in range(n)]
    start = threading.Barrier(n)

    def worker(conn):
        start.wait()
        return _issue_srv(conn, ids["company_id"], ids["customer_id"])

    with ThreadPoolExecutor(max_workers=n) as pool:
        issued = list(pool.map(worker, conns))

    assert sorted(issued) == [f"SRV-{i:05d}" for i in range(1, n + 1)]
    check = pg_connect()
    with check.cursor() as cur:
        cur.execute("SELECT count(*) AS n FROM service_invoices WHERE company_id = %s", (ids["company_id"],))
        assert cur.fetchone()["n"] == n


def test_return_scenario_restocks_and_debits(pg_connect):
    conn = pg_connect()
    ids = _seed(conn)
    return_id = _create_return(conn, ids)

    with conn.transaction():
        with conn.cursor() as cur:
            process_return(cur, ids["company_id"], return_id)

    after = _snapshot(conn, ids, return_id)
    assert after == {"a": Decimal("13.000"), "b": Decimal("5.000"), "balance": Decimal("800.00"), "status": "processed"}
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT a.opening_balance + COALESCE(SUM(m.amount), 0) AS derived
            FROM financial_accounts a
            LEFT JOIN account_movements m ON m.account_id = a.id
            WHERE a.id = %s
            GROUP BY a.id
            """,
            (ids["account_id"],),
        )
        assert cur.fetchone()["derived"] == Decimal("800.00")


def test_second_process_is_rejected_and_restocks_once(pg_connect):
    conn = pg_connect()
    ids = _seed(conn)
    return_id = _create_return(conn, ids)

    with conn.transaction():
        with conn.cursor() as cur:
            process_return(cur, ids["company_id"], return_id)
    with pytest.raises(InvalidStateError):
        with conn.transaction():
            with conn.cursor() as cur:
                process_return(cur, ids["company_id"], return_id)

    after = _snapshot(conn, ids, return_id)
    assert (after["a"], after["b"], after["balance"]) == (Decimal("13.000"), Decimal("5.000"), Decimal("800.00"))


def test_failed_debit_rolls_back_restock(pg_connect, monkeypatch):
    conn = pg_connect()
    ids = _seed(conn)
    return_id = _create_return(conn, ids)
    before = _snapshot(conn, ids, return_id)

    def broken_debit(*_args, **_kwargs):
        raise RuntimeError("injected failure")

    monkeypatch.setattr(settlement, "apply_account_delta", broken_debit)
    with pytest.raises(RuntimeError):
        with conn.transaction():
            with conn.cursor() as cur:
                process_return(cur, ids["company_id"], return_id)

    assert _snapshot(conn, ids, return_id) == before
    assert before["status"] == "pending"


def test_assignments_cannot_be_billed_twice(pg_connect):
    conn = pg_connect()
    ids = _seed(conn)
    with conn.transaction():
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO customer_assignments (company_id, customer_id, service_id)
                VALUES (%s, %s, %s)
                RETURNING id
                """,
                (ids["company_id"], ids["customer_id"], ids["service_id"]),
            )
            assignment_id = str(cur.fetchone()["id"])

    with conn.transaction():
        with conn.cursor() as cur:
            inv = issue_service_invoice_from_assignments(cur, ids["company_id"], ids["customer_id"], [assignment_id])
    assert inv["total_amount"] == Decimal("46.40")

    with pytest.raises(AlreadyBilledError):
        with conn.transaction():
            with conn.cursor() as cur:
                issue_service_invoice_from_assignments(cur, ids["company_id"], ids["customer_id"], [assignment_id])
