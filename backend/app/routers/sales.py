from fastapi import APIRouter, Depends
from pydantic import BaseModel
from datetime import date
from typing import List, Optional

from ..db import tenant_transaction
from ..deps import get_company_id
from ..documents import issue_sales_invoice
from ..errors import NotFoundError
from ..validation import Money, Quantity

router = APIRouter(prefix="/sales", tags=["sales"])


class SalesLineIn(BaseModel):
    item_id: str
    description: Optional[str] = None
    quantity: Quantity
    unit_price: Money


class SalesInvoiceIn(BaseModel):
    customer_name: str
    lines: List[SalesLineIn]
    due_date: Optional[date] = None
    notes: Optional[str] = None


@router.post("/invoices")
def create_sales_invoice(data: SalesInvoiceIn, company_id: str = Depends(get_company_id)):
    with tenant_transaction(company_id) as cur:
        invoice = issue_sales_invoice(
            cur,
            company_id,
            customer_name=data.customer_name,
            lines=[l.model_dump() for l in data.lines],
            due_date=data.due_date,
            notes=data.notes,
        )
        return {"invoice": invoice}


@router.get("/invoices/{invoice_id}")
def get_sales_invoice(invoice_id: str, company_id: str = Depends(get_company_id)):
    with tenant_transaction(company_id) as cur:
        cur.execute(
            """
            SELECT id, doc_no, customer_name, subtotal, tax_amount, total_amount, status, due_date, notes, created_at
            FROM sales_invoices
            WHERE company_id = %s AND id = %s
            """,
            (company_id, invoice_id),
        )
        invoice = cur.fetchone()
        if not invoice:
            raise NotFoundError("invoice not found")
        cur.execute(
            """
            SELECT id, line_no, item_id, description, quantity, unit_price, line_total
            FROM sales_invoice_lines
            WHERE invoice_id = %s
            ORDER BY line_no
            """,
            (invoice_id,),
        )
        invoice["lines"] = cur.fetchall()
        return {"invoice": invoice}
