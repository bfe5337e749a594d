"""
Admin auth: password login cookie plus a static token for scripts.
"""

import hashlib
import hmac
import logging
from typing import Optional

from fastapi import Cookie, Header, HTTPException, Response

from funnel.config import settings

logger = logging.getLogger("funnel.admin")

ADMIN_COOKIE_NAME = "dba_admin_session"
_HASH_PREFIX = "dba-admin-v1:"


def _hash_value(value: str) -> str:
    return hashlib.sha256(f"{_HASH_PREFIX}{value}".encode("utf-8")).hexdigest()


def _safe_equals(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def _configured_password() -> Optional[str]:
    value = (settings.admin_password or "").strip()
    return value or None


def is_admin_password_configured() -> bool:
    return _configured_password() is not None


def admin_session_token() -> Optional[str]:
    configured = _configured_password()
    return _hash_value(configured) if configured else None


def verify_admin_password(candidate: str) -> bool:
    configured = _configured_password()
    if not configured:
        return False
    return _safe_equals(_hash_value((candidate or "").strip()), _hash_value(configured))


def set_admin_cookie(response: Response) -> None:
    token = admin_session_token()
    if not token:
        return
    response.set_cookie(
        ADMIN_COOKIE_NAME,
        token,
        max_age=settings.admin_session_hours * 3600,
        httponly=True,
        samesite="lax",
        secure=settings.admin_cookie_secure,
        path="/",
    )


def clear_admin_cookie(response: Response) -> None:
    response.delete_cookie(
        ADMIN_COOKIE_NAME,
        httponly=True,
        samesite="lax",
        secure=settings.admin_cookie_secure,
        path="/",
    )


def _bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def is_admin_authorized(
    cookie_token: Optional[str],
    header_token: Optional[str],
    authorization: Optional[str],
) -> bool:
    session_token = admin_session_token()
    if session_token and cookie_token and _safe_equals(cookie_token, session_token):
        return True

    static_token = settings.admin_token
    if static_token:
        for candidate in (header_token, _bearer(authorization)):
            if candidate and _safe_equals(candidate, static_token):
                return True
    return False


async def require_admin(
    dba_admin_session: Optional[str] = Cookie(None),
    x_admin_token: Optional[str] = Header(None),
    authorization: Optional[str] = Header(None),
) -> None:
    """FastAPI dependency guarding every /admin route."""
    if not is_admin_authorized(dba_admin_session, x_admin_token, authorization):
        raise HTTPException(status_code=401, detail="Unauthorized")
