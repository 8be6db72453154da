from fastapi import APIRouter, Depends
from pydantic import BaseModel
from datetime import date
from decimal import Decimal
from typing import List, Optional

from ..db import tenant_transaction
from ..deps import get_company_id
from ..documents import issue_sales_return
from ..settlement import cancel_return, delete_return, get_return, process_return, return_stats, update_return
from ..validation import Money, PaymentMethod, Quantity, ReturnStatus

router = APIRouter(prefix="/returns", tags=["returns"])


class ReturnLineIn(BaseModel):
    item_id: str
    description: Optional[str] = None
    quantity: Quantity
    unit_price: Money


class ReturnIn(BaseModel):
    customer_name: str
    invoice_id: Optional[str] = None
    return_date: Optional[date] = None
    reason: Optional[str] = None
    notes: Optional[str] = None
    refund_method: Optional[PaymentMethod] = None
    financial_account_id: Optional[str] = None
    refund_amount: Money = Decimal("0")
    lines: List[ReturnLineIn]


class ReturnUpdate(BaseModel):
    customer_name: Optional[str] = None
    return_date: Optional[date] = None
    reason: Optional[str] = None
    notes: Optional[str] = None
    refund_method: Optional[PaymentMethod] = None
    financial_account_id: Optional[str] = None
    refund_amount: Optional[Money] = None


@router.get("")
def list_returns(status: Optional[ReturnStatus] = None, company_id: str = Depends(get_company_id)):
    with tenant_transaction(company_id) as cur:
        cur.execute(
            """
            SELECT id, doc_no, invoice_id, customer_name, return_date, total_amount,
                   refund_amount, financial_account_id, status, created_at
            FROM sales_returns
            WHERE company_id = %s
              AND (%s::text IS NULL OR status::text = %s)
            ORDER BY created_at DESC
            """,
            (company_id, status, status),
        )
        return {"returns": cur.fetchall()}


@router.get("/stats")
def get_return_stats(company_id: str = Depends(get_company_id)):
    with tenant_transaction(company_id) as cur:
        return {"stats": return_stats(cur, company_id)}


@router.post("")
def create_return(data: ReturnIn, company_id: str = Depends(get_company_id)):
    with tenant_transaction(company_id) as cur:
        ret = issue_sales_return(
            cur,
            company_id,
            customer_name=data.customer_name,
            lines=[l.model_dump() for l in data.lines],
            invoice_id=data.invoice_id,
            return_date=data.return_date,
            refund_amount=data.refund_amount,
            refund_method=data.refund_method,
            financial_account_id=data.financial_account_id,
            reason=data.reason,
            notes=data.notes,
        )
        return {"return": ret}


@router.get("/{return_id}")
def get_return_by_id(return_id: str, company_id: str = Depends(get_company_id)):
    with tenant_transaction(company_id) as cur:
        return {"return": get_return(cur, company_id, return_id)}


@router.patch("/{return_id}")
def patch_return(return_id: str, data: ReturnUpdate, company_id: str = Depends(get_company_id)):
    patch = data.model_dump(exclude_unset=True)
    with tenant_transaction(company_id) as cur:
        return {"return": update_return(cur, company_id, return_id, patch)}


@router.post("/{return_id}/process")
def process_return_endpoint(return_id: str, company_id: str = Depends(get_company_id)):
    with tenant_transaction(company_id) as cur:
        result = process_return(cur, company_id, return_id)
    return {
        "ok": True,
        "message": "Return processed. Stock and accounts updated.",
        **result,
    }


@router.post("/{return_id}/cancel")
def cancel_return_endpoint(return_id: str, company_id: str = Depends(get_company_id)):
    with tenant_transaction(company_id) as cur:
        return {"return": cancel_return(cur, company_id, return_id)}


@router.delete("/{return_id}")
def delete_return_endpoint(return_id: str, company_id: str = Depends(get_company_id)):
    with tenant_transaction(company_id) as cur:
        delete_return(cur, company_id, return_id)
        return {"ok": True}
