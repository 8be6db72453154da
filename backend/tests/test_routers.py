from contextlib import contextmanager
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from backend.app.deps import get_company_id, require_company_access
from backend.app.errors import AllocationExhaustedError, InvalidStateError, ValidationError
from backend.app.main import app
from backend.app.routers import documents as documents_router
from backend.app.routers import returns as returns_router
from backend.app.routers import service_billing as service_billing_router
from backend.tests.fakes import FakeCursor


def _patch_tx(monkeypatch, module, cur=None):
    cur = cur or FakeCursor()
    seen = []

    @contextmanager
    def fake_tx(company_id):
        seen.append(company_id)
        yield cur

    monkeypatch.setattr(module, "tenant_transaction", fake_tx)
    return cur, seen


def test_create_document_passes_series_header_and_refs(monkeypatch):
    cur, seen = _patch_tx(monkeypatch, documents_router)
    captured = {}

    def fake_issue(c, company_id, series, lines, linked_refs=None, **header):
        captured.update(series=series, lines=lines, linked_refs=linked_refs, header=header)
        return {"id": "d1", "doc_no": "RET-00001"}

    monkeypatch.setattr(documents_router, "issue_document", fake_issue)

    data = documents_router.DocumentIn(
        series="ret-",
        customer_name="Jane",
        refund_amount="20",
        lines=[{"item_id": "a", "quantity": "2", "unit_price": "10"}],
        linked_refs={"invoice_id": "inv-9"},
    )
    out = documents_router.create_document(data, company_id="c1")

    assert out == {"document": {"id": "d1", "doc_no": "RET-00001"}}
    assert seen == ["c1"]
    assert captured["series"] == "RET-"
    assert captured["linked_refs"] == {"invoice_id": "inv-9"}
    assert captured["lines"] == [{"item_id": "a", "quantity": Decimal("2"), "unit_price": Decimal("10")}]
    assert captured["header"]["refund_amount"] == Decimal("20")
    assert "customer_id" not in captured["header"]


def test_service_header_omits_sales_fields():
    data = documents_router.DocumentIn(series="SRV-", customer_id="cust-1", due_date="2026-01-31")
    assert documents_router._header_for(data) == {"customer_id": "cust-1", "payment_method": None, "notes": None}


def test_assignment_invoice_leaves_payment_method_unset(monkeypatch):
    _patch_tx(monkeypatch, service_billing_router)
    captured = {}

    def fake_issue(cur, company_id, customer_id, assignment_ids, payment_method=None, notes=None):
        captured.update(payment_method=payment_method, assignment_ids=assignment_ids)
        return {"id": "s1", "doc_no": "SRV-00004"}

    monkeypatch.setattr(service_billing_router, "issue_service_invoice_from_assignments", fake_issue)

    data = service_billing_router.AssignmentInvoiceIn(customer_id="cust-1", assignment_ids=["a1", "a2"])
    out = service_billing_router.create_invoice_from_assignments(data, company_id="c1")

    assert out == {"invoice": {"id": "s1", "doc_no": "SRV-00004"}}
    assert captured == {"payment_method": None, "assignment_ids": ["a1", "a2"]}
    assert documents_router._header_for(documents_router.DocumentIn(series="SRV-", customer_id="cust-1"))[
        "payment_method"
    ] is None


def test_process_return_endpoint_runs_in_one_transaction(monkeypatch):
    _, seen = _patch_tx(monkeypatch, returns_router)
    monkeypatch.setattr(
        returns_router,
        "process_return",
        lambda cur, company_id, return_id: {"return_id": return_id, "doc_no": "RET-00003", "lines_restocked": 2},
    )

    out = returns_router.process_return_endpoint("r1", company_id="c1")

    assert seen == ["c1"]
    assert out["ok"] is True
    assert out["doc_no"] == "RET-00003"
    assert out["lines_restocked"] == 2


def test_patch_return_sends_only_fields_that_were_set(monkeypatch):
    _patch_tx(monkeypatch, returns_router)
    captured = {}

    def fake_update(cur, company_id, return_id, patch):
        captured.update(patch)
        return {"id": return_id}

    monkeypatch.setattr(returns_router, "update_return", fake_update)
    returns_router.patch_return("r1", returns_router.ReturnUpdate(notes=None, reason="damaged"), company_id="c1")
    assert captured == {"notes": None, "reason": "damaged"}


def test_assignment_requires_active_service(monkeypatch):
    _patch_tx(monkeypatch, service_billing_router)
    with pytest.raises(ValidationError):
        service_billing_router.create_assignment(
            service_billing_router.AssignmentIn(customer_id="cust-1", service_id="gone"), company_id="c1"
        )


@pytest.fixture
def client():
    app.dependency_overrides[require_company_access] = lambda: True
    app.dependency_overrides[get_company_id] = lambda: "c1"
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def test_state_conflict_maps_to_409(monkeypatch, client):
    _patch_tx(monkeypatch, returns_router)

    def already_processed(cur, company_id, return_id):
        raise InvalidStateError("cannot process a processed return")

    monkeypatch.setattr(returns_router, "process_return", already_processed)

    res = client.post("/returns/r1/process", headers={"X-Request-Id": "req-1"})

    assert res.status_code == 409
    assert res.json() == {"detail": "cannot process a processed return", "error_type": "InvalidStateError"}
    assert res.headers["X-Request-Id"] == "req-1"


def test_allocation_exhausted_maps_to_503(monkeypatch, client):
    _patch_tx(monkeypatch, documents_router)

    def exhausted(*_args, **_kwargs):
        raise AllocationExhaustedError("could not allocate a SRV- number after 50 attempts")

    monkeypatch.setattr(documents_router, "issue_document", exhausted)

    res = client.post(
        "/documents",
        json={"series": "SRV-", "customer_id": "cust-1", "lines": [{"quantity": 1, "unit_price": "10.00"}]},
    )

    assert res.status_code == 503
    assert res.json()["error_type"] == "AllocationExhaustedError"


def test_bad_payload_is_422(client):
    res = client.post("/documents", json={"series": "PO-", "lines": []})
    assert res.status_code == 422
