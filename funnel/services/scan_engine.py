"""
Scan Engine: lead intake → scan job → background audit → stored report.

The request path only writes a Lead and a QUEUED Scan. Everything slow
(page fetch, PSI, PDF) runs from the scan queue via ``execute_scan``, which
opens its own session. Status moves forward only; the model enforces it.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from funnel.database import async_session
from funnel.models.lead import Lead
from funnel.models.scan import (
    SCAN_COMPLETE,
    SCAN_FAILED,
    SCAN_PROCESSING,
    SCAN_QUEUED,
    Scan,
)
from funnel.schemas.audit import AUDIT_REASONS, DEFAULT_AUDIT_REASON, UpgradeCard
from funnel.services.activity import log_activity
from funnel.services.audit_engine import normalize_website_url, parse_competitor_list, run_audit
from funnel.services.lead_capture import EMAIL_RE, PHONE_RE
from funnel.services.queue import scan_queue
from funnel.services.report import render_report_pdf

logger = logging.getLogger("funnel.scan")


PROGRESS_QUEUED = 4
PROGRESS_STARTED = 18
PROGRESS_DONE = 100
MAX_RECOMMENDATIONS = 8


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clean(value, max_len: int) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip()[:max_len]


# ─── Intake ────────────────────────────────────────────────────────────

def normalize_lead_scan_input(payload: dict) -> dict:
    """
    Clean and validate the audit form. Raises ValueError with a message that
    is safe to show the visitor.
    """
    full_name = _clean(payload.get("full_name"), 120)
    mobile_number = _clean(payload.get("mobile_number"), 40)
    business_name = _clean(payload.get("business_name"), 140)
    reason = payload.get("reason")
    email = _clean(payload.get("email"), 180).lower()
    industry = _clean(payload.get("industry"), 120)

    if not full_name or not mobile_number or not business_name:
        raise ValueError("Full name, mobile number, and business name are required.")

    if not PHONE_RE.match(mobile_number):
        raise ValueError("Please enter a valid mobile number.")

    website_url = normalize_website_url(_clean(payload.get("website_url"), 500))

    if email and not EMAIL_RE.match(email):
        raise ValueError("Please enter a valid email address or leave it blank.")

    return {
        "full_name": full_name,
        "mobile_number": mobile_number,
        "business_name": business_name,
        "website_url": website_url,
        "reason": reason if reason in AUDIT_REASONS else DEFAULT_AUDIT_REASON,
        "email": email or None,
        "industry": industry or "General",
        "competitors": parse_competitor_list(payload.get("competitors")),
    }


async def create_lead_and_scan(db: AsyncSession, data: dict, source: str = "website-audit") -> tuple[Lead, Scan]:
    """Insert the lead and its QUEUED scan in one transaction."""
    lead = Lead(
        full_name=data["full_name"],
        mobile_number=data["mobile_number"],
        business_name=data["business_name"],
        website_url=data["website_url"],
        reason=data["reason"],
        email=data.get("email"),
        industry=data.get("industry") or "General",
        source=source,
    )
    db.add(lead)
    await db.flush()

    scan = Scan(
        lead_id=lead.id,
        status=SCAN_QUEUED,
        progress=PROGRESS_QUEUED,
        website_url=data["website_url"],
        concern=data["reason"],
        industry=lead.industry,
        competitors=data.get("competitors") or None,
    )
    db.add(scan)
    await db.flush()

    await log_activity(
        "lead", lead.id, "created",
        description=f"{lead.full_name} ({lead.business_name}) requested a website audit",
        icon="🧲", actor=f"lead:{lead.full_name}", db=db,
    )
    await log_activity(
        "scan", scan.id, "queued",
        description=f"Audit queued for {scan.website_url}",
        icon="⏳", metadata={"lead_id": lead.id, "concern": scan.concern}, db=db,
    )
    await db.commit()
    await db.refresh(scan)

    logger.info("🧲 Lead %s captured, scan %s queued for %s", lead.id, scan.id, scan.website_url)
    return lead, scan


# ─── Status updates ────────────────────────────────────────────────────

def update_scan_status(scan: Scan, **patch) -> Scan:
    """
    Apply a patch to a scan. Status is applied first, so a backwards move
    raises ScanTransitionError before any other field is touched.
    """
    status = patch.pop("status", None)
    if status is not None:
        scan.status = status
    for key, value in patch.items():
        if not hasattr(Scan, key):
            raise AttributeError(f"Scan has no field {key!r}")
        setattr(scan, key, value)
    return scan


async def get_scan(db: AsyncSession, scan_id: str) -> Optional[Scan]:
    result = await db.execute(
        select(Scan).where(Scan.id == scan_id).options(selectinload(Scan.lead))
    )
    return result.scalar_one_or_none()


# ─── Upgrade cards ─────────────────────────────────────────────────────

_DEFAULT_CARDS = (
    UpgradeCard(
        title="Website conversion upgrade",
        reason="Your pages need clearer offers and stronger conversion routes.",
        service_slug="website-pro-build",
        from_price="From £549",
    ),
    UpgradeCard(
        title="Follow-up automation",
        reason="Fast response wins. Automation protects warm leads from cooling.",
        service_slug="follow-up-automation",
        from_price="From £549",
    ),
    UpgradeCard(
        title="CRM setup",
        reason="Visibility in pipeline stages prevents leakage and missed handoffs.",
        service_slug="crm-setup",
        from_price="From £599",
    ),
)


def build_upgrade_cards(reason: str) -> list[UpgradeCard]:
    """Service cards matched to what the visitor said was wrong."""
    website, follow_up, crm = _DEFAULT_CARDS

    if reason == "Need website":
        return [
            UpgradeCard(
                title="Website Starter Build",
                reason="Launch fast with a premium online presence in 72 hours.",
                service_slug="website-starter-build",
                from_price="From £399",
            ),
            UpgradeCard(
                title="Booking system setup",
                reason="Give buyers a clear path from enquiry to confirmed slot.",
                service_slug="booking-system-setup",
                from_price="From £449",
            ),
            follow_up,
            crm,
        ]

    if reason == "Slow replies":
        return [
            UpgradeCard(
                title="Call tracking + missed call capture",
                reason="Recover calls immediately before competitors respond.",
                service_slug="call-tracking-missed-call-capture",
                from_price="From £499",
            ),
            UpgradeCard(
                title="WhatsApp business setup",
                reason="Open a fast-response channel for mobile-first leads.",
                service_slug="whatsapp-business-setup",
                from_price="From £399",
            ),
            follow_up,
        ]

    if reason == "Bad SEO":
        return [
            UpgradeCard(
                title="SEO Upgrade Pack",
                reason="Fix technical visibility and improve high-intent rankings.",
                service_slug="seo-upgrade-pack",
                from_price="From £499",
            ),
            website,
            crm,
        ]

    return list(_DEFAULT_CARDS)


# ─── Background execution ──────────────────────────────────────────────

async def execute_scan(scan_id: str) -> None:
    """Run one scan end to end. Failures mark the scan FAILED instead of raising."""
    async with async_session() as db:
        scan = await get_scan(db, scan_id)
        if not scan:
            logger.error("Scan %s not found in DB, skipping", scan_id)
            return
        if scan.is_terminal:
            logger.info("Scan %s already %s, skipping", scan_id, scan.status)
            return

        update_scan_status(
            scan,
            status=SCAN_PROCESSING,
            progress=PROGRESS_STARTED,
            started_at=scan.started_at or _utcnow(),
        )
        await db.commit()
        logger.info("⚙️ Scan %s processing %s", scan_id, scan.website_url)

        try:
            await _run_and_store(db, scan)
        except Exception as e:
            logger.error("❌ Scan %s failed: %s", scan_id, e)
            await db.rollback()
            await db.refresh(scan)
            update_scan_status(
                scan,
                status=SCAN_FAILED,
                progress=PROGRESS_DONE,
                error_message=str(e) or "Scan failed.",
                completed_at=_utcnow(),
            )
            await log_activity(
                "scan", scan.id, "failed", description=str(e)[:500], icon="❌", db=db,
            )
            await db.commit()


async def _run_and_store(db: AsyncSession, scan: Scan) -> None:
    audit = await run_audit(
        scan.website_url,
        industry=scan.industry,
        goal=scan.concern,
        competitors=scan.competitors,
    )
    cards = build_upgrade_cards(scan.concern)

    checks = [c.model_dump() for c in audit.checks]
    insights = [f"{c.label}: {c.evidence}" for c in audit.top_findings[:4]]
    recommendations = (
        list(audit.narrative.next_steps)
        + [f"{card.title}: {card.reason}" for card in cards]
    )[:MAX_RECOMMENDATIONS]

    update_scan_status(
        scan,
        scores=audit.scores.model_dump(),
        checks=checks,
        insights=insights,
        recommendations=recommendations,
        narrative=audit.narrative.model_dump(),
        upgrade_cards=[card.model_dump() for card in cards],
        raw_result={
            "normalized_url": audit.url,
            "generated_at": audit.generated_at,
            "categories": [c.model_dump() for c in audit.categories],
            "page_experience": audit.page_experience,
            "visibility_signals": audit.visibility_signals,
            "competitors": [c.model_dump() for c in audit.competitors],
            "recommended_modules": [m.model_dump() for m in audit.recommended_modules],
            "fetch_error": audit.fetch_error,
        },
    )

    try:
        path = await asyncio.to_thread(render_report_pdf, scan, scan.lead)
        scan.report_path = str(path)
    except Exception as e:
        logger.warning("PDF render failed for scan %s: %s", scan.id, e)

    update_scan_status(
        scan,
        status=SCAN_COMPLETE,
        progress=PROGRESS_DONE,
        completed_at=_utcnow(),
    )
    await log_activity(
        "scan", scan.id, "completed",
        description=f"Audit scored {audit.scores.overall}/100",
        icon="✅", metadata={"overall": audit.scores.overall}, db=db,
    )
    await db.commit()
    logger.info("✅ Scan %s complete: %d/100", scan.id, audit.scores.overall)


async def ensure_scan_progress(scan: Scan) -> bool:
    """Re-enqueue a non-terminal scan that nothing is working on. Returns True if queued."""
    if scan.is_terminal or scan_queue.contains(scan.id):
        return False
    return await scan_queue.enqueue(scan.id)


async def recover_pending_scans() -> int:
    """Startup sweep: queue every scan left QUEUED or PROCESSING by a previous run."""
    async with async_session() as db:
        result = await db.execute(
            select(Scan.id)
            .where(Scan.status.in_([SCAN_QUEUED, SCAN_PROCESSING]))
            .order_by(Scan.created_at)
        )
        scan_ids = list(result.scalars().all())

    queued = 0
    for scan_id in scan_ids:
        if await scan_queue.enqueue(scan_id):
            queued += 1
    if queued:
        logger.info("🔄 Re-queued %d unfinished scans", queued)
    return queued


# ─── Listing ───────────────────────────────────────────────────────────

async def list_recent_scans(db: AsyncSession, limit: int = 30) -> list[Scan]:
    result = await db.execute(
        select(Scan).options(selectinload(Scan.lead)).order_by(Scan.created_at.desc()).limit(limit)
    )
    return list(result.scalars().all())
