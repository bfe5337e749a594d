"""
Portal: short-lived magic-link sessions that let a lead revisit their audits.
"""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from funnel.config import settings
from funnel.models.lead import Lead, PortalSession
from funnel.models.scan import Scan
from funnel.services.activity import log_activity
from funnel.services.lead_capture import find_lead_by_email

logger = logging.getLogger("funnel.portal")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


async def purge_expired_sessions(db: AsyncSession) -> int:
    result = await db.execute(
        delete(PortalSession)
        .where(PortalSession.expires_at <= _utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def create_portal_session_for_lead(db: AsyncSession, lead_id: str) -> Optional[dict]:
    """Mint a fresh session link for a lead, or None if the lead does not exist."""
    await purge_expired_sessions(db)

    lead = await db.get(Lead, lead_id)
    if not lead:
        await db.commit()
        return None

    token = secrets.token_hex(24)
    expires_at = _utcnow() + timedelta(hours=settings.portal_session_hours)
    db.add(PortalSession(lead_id=lead.id, token=token, expires_at=expires_at))
    await log_activity(
        "portal", lead.id, "link_created", description="Portal link issued", icon="🔑", db=db,
    )
    await db.commit()
    logger.info("🔑 Portal session issued for lead %s", lead.id)

    return {
        "token": token,
        "expires_at": expires_at.isoformat(),
        "lead_id": lead.id,
        "url": f"{settings.site_url}/portal/{token}",
    }


async def create_portal_session_for_email(db: AsyncSession, email: str) -> Optional[dict]:
    lead = await find_lead_by_email(db, email)
    if not lead:
        return None
    return await create_portal_session_for_lead(db, lead.id)


def scan_summary(scan: Scan) -> dict:
    scores = scan.scores or {}
    return {
        "id": scan.id,
        "status": scan.status,
        "website_url": scan.website_url,
        "overall_score": scores.get("overall"),
        "scores": scores,
        "top_findings": [
            {"label": c.get("label"), "category": c.get("category"), "status": c.get("status"), "fix": c.get("fix")}
            for c in (scan.checks or [])
            if c.get("status") != "green"
        ][:5],
        "upgrade_cards": scan.upgrade_cards or [],
        "created_at": _iso(scan.created_at),
        "completed_at": _iso(scan.completed_at),
    }


async def _scans_for_lead(db: AsyncSession, lead: Lead) -> list[Scan]:
    """Scans from every lead record sharing this email, newest first."""
    query = select(Scan).join(Lead, Scan.lead_id == Lead.id)
    if lead.email:
        query = query.where(Lead.email == lead.email)
    else:
        query = query.where(Lead.id == lead.id)
    result = await db.execute(
        query.order_by(Scan.created_at.desc()).limit(settings.portal_history_limit)
    )
    return list(result.scalars().all())


async def get_portal_payload(db: AsyncSession, token: str) -> Optional[dict]:
    await purge_expired_sessions(db)
    await db.commit()

    result = await db.execute(select(PortalSession).where(PortalSession.token == token))
    session = result.scalar_one_or_none()
    if not session or session.is_expired():
        return None

    lead = await db.get(Lead, session.lead_id)
    if not lead:
        return None

    history = [scan_summary(s) for s in await _scans_for_lead(db, lead)]
    return {
        "session": {
            "token": session.token,
            "expires_at": _iso(session.expires_at),
            "created_at": _iso(session.created_at),
        },
        "lead": {
            **lead.to_summary(),
            "mobile_number": lead.mobile_number,
            "source": lead.source,
            "created_at": _iso(lead.created_at),
            "last_seen_at": _iso(lead.last_seen_at),
        },
        "latest_scan": history[0] if history else None,
        "scan_history": history,
    }
