import importlib.util
import sys
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path

from backend.tests.fakes import FakeCursor

SCRIPT = Path(__file__).resolve().parents[2] / "scripts" / "ledger_integrity_check.py"


def _load():
    spec = importlib.util.spec_from_file_location("ledger_integrity_check", SCRIPT)
    mod = importlib.util.module_from_spec(spec)
    # dataclasses resolve string annotations through sys.modules.
    sys.modules[spec.name] = mod
    spec.loader.exec_module(mod)
    return mod


class _DummyConn:
    def __init__(self, cur):
        self._cur = cur

    def cursor(self):
        return self._cur


def _patch_db(monkeypatch, mod, cur):
    @contextmanager
    def fake_conn():
        yield _DummyConn(cur)

    monkeypatch.setattr(mod, "get_conn", fake_conn)
    monkeypatch.setattr(mod, "set_company_context", lambda *_args, **_kwargs: None)


def test_numbering_reports_duplicates_and_gaps(monkeypatch):
    mod = _load()
    cur = FakeCursor()
    cur.on(
        "FROM service_invoices",
        [{"doc_no": "SRV-00001"}, {"doc_no": "SRV-00002"}, {"doc_no": "SRV-00002"}, {"doc_no": "SRV-00005"}],
    )
    _patch_db(monkeypatch, mod, cur)

    findings = mod.check_numbering("c1", strict_gaps=False)

    kinds = [(f.kind, f.blocking) for f in findings]
    assert ("duplicate_doc_no", True) in kinds
    assert ("numbering_gap", False) in kinds
    gap = [f for f in findings if f.kind == "numbering_gap"][0]
    assert gap.message == "2 missing number(s): 3, 4"


def test_document_totals_flag_mismatches(monkeypatch):
    mod = _load()
    cur = FakeCursor()
    cur.on(
        "FROM sales_invoices h",
        [
            {
                "id": "i1",
                "doc_no": "INV-00001",
                "subtotal": Decimal("100.00"),
                "tax_amount": Decimal("16.00"),
                "total_amount": Decimal("116.00"),
                "lines_total": Decimal("100.00"),
            },
            {
                "id": "i2",
                "doc_no": "INV-00002",
                "subtotal": Decimal("50.00"),
                "tax_amount": Decimal("8.00"),
                "total_amount": Decimal("60.00"),
                "lines_total": Decimal("49.00"),
            },
        ],
    )
    _patch_db(monkeypatch, mod, cur)

    findings = mod.check_document_totals("c1", 200)

    assert sorted(f.kind for f in findings) == ["sales_invoices_subtotal_mismatch", "sales_invoices_total_mismatch"]
    assert {f.ref for f in findings} == {"INV-00002"}
