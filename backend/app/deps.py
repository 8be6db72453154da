from datetime import datetime, timezone
from typing import Optional

from fastapi import Cookie, Depends, Header, HTTPException

from .db import get_conn, set_company_context
from .security import hash_session_token

# Sessions are issued by the sign-in service; billing only checks them.
SESSION_COOKIE_NAME = "tillbook_session"


def session_token(authorization: Optional[str], cookie_token: Optional[str]) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    if cookie_token:
        return cookie_token
    raise HTTPException(status_code=401, detail="missing session token")


def get_session(
    authorization: Optional[str] = Header(None),
    cookie_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
) -> dict:
    token_hash = hash_session_token(session_token(authorization, cookie_token))
    with get_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT user_id, active_company_id
                FROM auth_sessions
                WHERE token = %s AND is_active AND expires_at > %s
                """,
                (token_hash, datetime.now(timezone.utc)),
            )
            row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=401, detail="session expired or revoked")
    return row


def get_company_id(
    x_company_id: Optional[str] = Header(None, alias="X-Company-Id"),
    session: dict = Depends(get_session),
) -> str:
    company_id = x_company_id or session.get("active_company_id")
    if not company_id:
        raise HTTPException(status_code=400, detail="missing company id")
    return str(company_id)


def require_company_access(company_id: str = Depends(get_company_id), session: dict = Depends(get_session)):
    """Gate for every billing route: the session's user must belong to the company in scope."""
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                "SELECT 1 FROM user_companies WHERE user_id = %s AND company_id = %s",
                (session["user_id"], company_id),
            )
            if not cur.fetchone():
                raise HTTPException(status_code=403, detail="no access to this company")
    return True
