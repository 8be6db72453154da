from fastapi import APIRouter, Depends
from pydantic import BaseModel
from decimal import Decimal
from typing import Optional

from ..balances import delete_account, link_payment, record_payment, set_account_balance
from ..db import tenant_transaction
from ..deps import get_company_id
from ..errors import NotFoundError, ValidationError
from ..money import q_money
from ..validation import AccountType, Money, PaymentMethod

router = APIRouter(prefix="/financial-accounts", tags=["financial-accounts"])

ACCOUNT_COLUMNS = """
    id, account_name, account_type, account_number, opening_balance, current_balance,
    is_active, created_at, updated_at
"""


class AccountIn(BaseModel):
    account_name: str
    account_type: AccountType
    account_number: Optional[str] = None
    opening_balance: Decimal = Decimal("0")


class AccountUpdate(BaseModel):
    account_name: Optional[str] = None
    account_type: Optional[AccountType] = None
    account_number: Optional[str] = None
    is_active: Optional[bool] = None
    # Administrative correction, booked as an adjustment movement.
    current_balance: Optional[Decimal] = None


class PaymentIn(BaseModel):
    amount: Money
    method: PaymentMethod
    reference: Optional[str] = None
    doc_no: Optional[str] = None


class PaymentLinkIn(BaseModel):
    doc_no: str


def _fetch_account(cur, company_id: str, account_id: str) -> dict:
    cur.execute(
        f"SELECT {ACCOUNT_COLUMNS} FROM financial_accounts WHERE company_id = %s AND id = %s",
        (company_id, account_id),
    )
    row = cur.fetchone()
    if not row:
        raise NotFoundError("financial account not found")
    return row


@router.get("")
def list_accounts(company_id: str = Depends(get_company_id)):
    with tenant_transaction(company_id) as cur:
        cur.execute(
            f"""
            SELECT {ACCOUNT_COLUMNS}
            FROM financial_accounts
            WHERE company_id = %s
            ORDER BY account_name
            """,
            (company_id,),
        )
        return {"accounts": cur.fetchall()}


@router.post("")
def create_account(data: AccountIn, company_id: str = Depends(get_company_id)):
    name = (data.account_name or "").strip()
    if not name:
        raise ValidationError("account_name is required")
    opening = q_money(data.opening_balance)
    with tenant_transaction(company_id) as cur:
        cur.execute(
            f"""
            INSERT INTO financial_accounts
              (id, company_id, account_name, account_type, account_number, opening_balance, current_balance, is_active)
            VALUES
              (gen_random_uuid(), %s, %s, %s, %s, %s, %s, true)
            RETURNING {ACCOUNT_COLUMNS}
            """,
            (company_id, name, data.account_type, data.account_number, opening, opening),
        )
        return {"account": cur.fetchone()}


@router.get("/{account_id}")
def get_account(account_id: str, company_id: str = Depends(get_company_id)):
    with tenant_transaction(company_id) as cur:
        return {"account": _fetch_account(cur, company_id, account_id)}


@router.patch("/{account_id}")
def update_account(account_id: str, data: AccountUpdate, company_id: str = Depends(get_company_id)):
    patch = data.model_dump(exclude_none=True)
    new_balance = patch.pop("current_balance", None)
    if "account_name" in patch:
        patch["account_name"] = patch["account_name"].strip()
        if not patch["account_name"]:
            raise ValidationError("account_name cannot be empty")

    with tenant_transaction(company_id) as cur:
        if patch:
            fields = [f"{k} = %s" for k in patch]
            params = list(patch.values()) + [company_id, account_id]
            cur.execute(
                f"""
                UPDATE financial_accounts
                SET {', '.join(fields)}, updated_at = now()
                WHERE company_id = %s AND id = %s
                RETURNING id
                """,
                params,
            )
            if not cur.fetchone():
                raise NotFoundError("financial account not found")
        if new_balance is not None:
            set_account_balance(cur, company_id, account_id, new_balance)
        return {"account": _fetch_account(cur, company_id, account_id)}


@router.post("/{account_id}/deactivate")
def deactivate_account(account_id: str, company_id: str = Depends(get_company_id)):
    with tenant_transaction(company_id) as cur:
        cur.execute(
            """
            UPDATE financial_accounts
            SET is_active = false, updated_at = now()
            WHERE company_id = %s AND id = %s
            RETURNING id
            """,
            (company_id, account_id),
        )
        if not cur.fetchone():
            raise NotFoundError("financial account not found")
        return {"ok": True}


@router.delete("/{account_id}")
def remove_account(account_id: str, company_id: str = Depends(get_company_id)):
    with tenant_transaction(company_id) as cur:
        delete_account(cur, company_id, account_id)
        return {"ok": True}


@router.post("/{account_id}/payments")
def create_payment(account_id: str, data: PaymentIn, company_id: str = Depends(get_company_id)):
    with tenant_transaction(company_id) as cur:
        payment = record_payment(
            cur,
            company_id,
            account_id,
            data.amount,
            data.method,
            reference=data.reference,
            doc_no=(data.doc_no or "").strip() or None,
        )
        return {"payment": payment}


@router.post("/payments/{payment_id}/link")
def link_payment_to_document(payment_id: str, data: PaymentLinkIn, company_id: str = Depends(get_company_id)):
    doc_no = (data.doc_no or "").strip().upper()
    if not doc_no:
        raise ValidationError("doc_no is required")
    with tenant_transaction(company_id) as cur:
        return {"payment": link_payment(cur, company_id, payment_id, doc_no)}
