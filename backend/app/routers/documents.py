from fastapi import APIRouter, Depends
from pydantic import BaseModel
from datetime import date
from decimal import Decimal
from typing import List, Optional

from ..db import tenant_transaction
from ..deps import get_company_id
from ..documents import issue_document
from ..validation import Money, PaymentMethod, Quantity, SeriesPrefix

router = APIRouter(prefix="/documents", tags=["documents"])


class DocumentLineIn(BaseModel):
    item_id: Optional[str] = None
    service_id: Optional[str] = None
    description: Optional[str] = None
    quantity: Quantity
    unit_price: Money


class LinkedRefsIn(BaseModel):
    booking_id: Optional[str] = None
    invoice_id: Optional[str] = None
    assignment_ids: List[str] = []


class DocumentIn(BaseModel):
    series: SeriesPrefix
    lines: List[DocumentLineIn] = []
    linked_refs: Optional[LinkedRefsIn] = None
    # Payer: service invoices bill a customer record, sales documents a name.
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    payment_method: Optional[PaymentMethod] = None
    due_date: Optional[date] = None
    return_date: Optional[date] = None
    refund_amount: Money = Decimal("0")
    refund_method: Optional[PaymentMethod] = None
    financial_account_id: Optional[str] = None
    reason: Optional[str] = None
    notes: Optional[str] = None


def _header_for(data: DocumentIn) -> dict:
    if data.series == "SRV-":
        return {"customer_id": data.customer_id, "payment_method": data.payment_method, "notes": data.notes}
    if data.series == "INV-":
        return {"customer_name": data.customer_name, "due_date": data.due_date, "notes": data.notes}
    return {
        "customer_name": data.customer_name,
        "return_date": data.return_date,
        "refund_amount": data.refund_amount,
        "refund_method": data.refund_method,
        "financial_account_id": data.financial_account_id,
        "reason": data.reason,
        "notes": data.notes,
    }


@router.post("")
def create_document(data: DocumentIn, company_id: str = Depends(get_company_id)):
    refs = data.linked_refs.model_dump(exclude_defaults=True) if data.linked_refs else None
    with tenant_transaction(company_id) as cur:
        doc = issue_document(
            cur,
            company_id,
            data.series,
            [l.model_dump(exclude_none=True) for l in data.lines],
            linked_refs=refs,
            **_header_for(data),
        )
        return {"document": doc}
