from fastapi import APIRouter, Depends
from pydantic import BaseModel
from typing import List, Optional

from ..db import tenant_transaction
from ..deps import get_company_id
from ..documents import issue_service_invoice, issue_service_invoice_from_assignments
from ..errors import ValidationError
from ..validation import Money, PaymentMethod, Quantity

router = APIRouter(prefix="/service-billing", tags=["service-billing"])


class ServiceLineIn(BaseModel):
    service_id: Optional[str] = None
    description: Optional[str] = None
    quantity: Quantity = 1
    unit_price: Money


class ServiceInvoiceIn(BaseModel):
    customer_id: str
    booking_id: Optional[str] = None
    lines: List[ServiceLineIn]
    payment_method: Optional[PaymentMethod] = None
    notes: Optional[str] = None


class AssignmentInvoiceIn(BaseModel):
    customer_id: str
    assignment_ids: List[str]
    payment_method: Optional[PaymentMethod] = None
    notes: Optional[str] = None


class AssignmentIn(BaseModel):
    customer_id: str
    service_id: str
    booking_id: Optional[str] = None
    notes: Optional[str] = None


@router.post("/invoices")
def create_service_invoice(data: ServiceInvoiceIn, company_id: str = Depends(get_company_id)):
    with tenant_transaction(company_id) as cur:
        invoice = issue_service_invoice(
            cur,
            company_id,
            customer_id=data.customer_id,
            lines=[l.model_dump() for l in data.lines],
            booking_id=data.booking_id,
            payment_method=data.payment_method,
            notes=data.notes,
        )
        return {"invoice": invoice}


@router.post("/invoices/from-assignments")
def create_invoice_from_assignments(data: AssignmentInvoiceIn, company_id: str = Depends(get_company_id)):
    if not data.assignment_ids:
        raise ValidationError("at least one assignment is required")
    with tenant_transaction(company_id) as cur:
        invoice = issue_service_invoice_from_assignments(
            cur,
            company_id,
            customer_id=data.customer_id,
            assignment_ids=data.assignment_ids,
            payment_method=data.payment_method,
            notes=data.notes,
        )
        return {"invoice": invoice}


@router.get("/invoices")
def list_service_invoices(company_id: str = Depends(get_company_id)):
    with tenant_transaction(company_id) as cur:
        cur.execute(
            """
            SELECT si.id, si.doc_no, si.customer_id, c.name AS customer_name, si.booking_id,
                   si.subtotal, si.tax_amount, si.total_amount, si.status, si.payment_method, si.created_at
            FROM service_invoices si
            JOIN service_customers c ON c.id = si.customer_id
            WHERE si.company_id = %s
            ORDER BY si.created_at DESC
            """,
            (company_id,),
        )
        return {"invoices": cur.fetchall()}


@router.post("/assignments")
def create_assignment(data: AssignmentIn, company_id: str = Depends(get_company_id)):
    with tenant_transaction(company_id) as cur:
        cur.execute(
            """
            INSERT INTO customer_assignments (id, company_id, customer_id, service_id, booking_id, notes)
            SELECT gen_random_uuid(), %s, %s, s.id, %s, %s
            FROM services s
            WHERE s.company_id = %s AND s.id = %s AND s.is_active
            RETURNING id, customer_id, service_id, booking_id, status, start_time
            """,
            (company_id, data.customer_id, data.booking_id, data.notes, company_id, data.service_id),
        )
        row = cur.fetchone()
        if not row:
            raise ValidationError("invalid service_id")
        return {"assignment": row}


@router.get("/assignments/unbilled")
def list_unbilled_assignments(company_id: str = Depends(get_company_id)):
    with tenant_transaction(company_id) as cur:
        cur.execute(
            """
            SELECT a.id, a.customer_id, c.name AS customer_name, a.service_id, s.service_name,
                   s.price, a.start_time, a.end_time
            FROM customer_assignments a
            JOIN services s ON s.id = a.service_id
            JOIN service_customers c ON c.id = a.customer_id
            WHERE a.company_id = %s AND a.status = 'open'
            ORDER BY a.start_time DESC
            """,
            (company_id,),
        )
        return {"assignments": cur.fetchall()}
