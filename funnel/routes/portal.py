"""
DBA Funnel: client portal routes.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from funnel.database import get_db
from funnel.schemas import PortalLinkRequest
from funnel.services.lead_capture import EMAIL_RE
from funnel.services.portal import create_portal_session_for_email, get_portal_payload

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/portal", tags=["portal"])


@router.post("/request-link")
async def request_portal_link(req: PortalLinkRequest, db: AsyncSession = Depends(get_db)):
    email = req.email.strip().lower()
    if not email or not EMAIL_RE.match(email):
        raise HTTPException(400, "Please provide a valid email.")

    # Unknown emails get the same answer as known ones
    link = await create_portal_session_for_email(db, email)
    if link:
        logger.info("🔑 Portal link requested for %s", email)
    return {
        "ok": True,
        "token": link["token"] if link else None,
        "expires_at": link["expires_at"] if link else None,
    }


@router.get("/session")
async def portal_session(
    token: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    if not token:
        raise HTTPException(400, "Token is required.")

    payload = await get_portal_payload(db, token)
    if not payload:
        raise HTTPException(404, "Session is invalid or expired.")
    return {"ok": True, **payload}
