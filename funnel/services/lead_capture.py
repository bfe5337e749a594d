"""
Lead Capture: contact form validation, email upsert and CRM forwarding.
"""

import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Optional

import aiohttp
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from funnel.config import settings
from funnel.models.lead import Lead
from funnel.services.activity import log_activity
from funnel.services.audit_engine import normalize_website_url

logger = logging.getLogger("funnel.leads")

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_RE = re.compile(r"^[+()\d\s-]{7,22}$")
WEBSITE_RE = re.compile(r"^https?://")

AUDIT_HISTORY_LIMIT = 12
MIN_MESSAGE_LENGTH = 20


class LeadValidationError(ValueError):
    """Carries every problem found in a contact form, not just the first."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clean(value, max_len: int = 240) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip()[:max_len]


# ─── Contact form ──────────────────────────────────────────────────────

def normalize_lead_payload(payload: dict) -> dict:
    return {
        "name": _clean(payload.get("name"), 120),
        "email": _clean(payload.get("email"), 180).lower(),
        "phone": _clean(payload.get("phone"), 40),
        "company": _clean(payload.get("company"), 140),
        "website": _clean(payload.get("website"), 200),
        "message": _clean(payload.get("message"), 2000),
        "budget_range": _clean(payload.get("budget_range"), 120),
        "timeline": _clean(payload.get("timeline"), 120),
        "industry": _clean(payload.get("industry"), 120),
        "source": _clean(payload.get("source"), 120),
    }


def validate_lead_payload(lead: dict, require_message: bool = False, require_email: bool = True) -> list[str]:
    """Return a list of human-readable problems. Empty means valid."""
    errors: list[str] = []

    if not lead["name"]:
        errors.append("Name is required.")

    if require_email:
        if not lead["email"] or not EMAIL_RE.match(lead["email"]):
            errors.append("A valid email is required.")
    elif lead["email"] and not EMAIL_RE.match(lead["email"]):
        errors.append("Please provide a valid email address or leave it blank.")

    if not lead["phone"] or not PHONE_RE.match(lead["phone"]):
        errors.append("A valid phone number is required.")

    if not lead["company"]:
        errors.append("Company is required.")

    if lead["website"] and not WEBSITE_RE.match(lead["website"]):
        errors.append("Website must start with http:// or https://.")

    if require_message and len(lead["message"]) < MIN_MESSAGE_LENGTH:
        errors.append(f"Message must contain at least {MIN_MESSAGE_LENGTH} characters.")

    return errors


async def forward_to_crm(lead: dict) -> tuple[bool, str]:
    """
    POST the lead to CRM_WEBHOOK_URL. Returns (forwarded, message).
    Never raises.
    """
    webhook = settings.crm_webhook_url
    if not webhook:
        return False, "Lead captured locally. CRM webhook is not configured."

    body = {**lead, "submitted_at": _utcnow().isoformat()}
    timeout = aiohttp.ClientTimeout(total=settings.crm_timeout)
    try:
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.post(webhook, json=body) as resp:
                if resp.status >= 300:
                    logger.warning("CRM webhook answered %s", resp.status)
                    return False, "Lead captured locally, but CRM forwarding failed."
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.warning("CRM webhook failed: %s", e)
        return False, "Lead captured locally, but CRM forwarding failed."

    logger.info("📨 Lead forwarded to CRM")
    return True, "Lead captured and forwarded to CRM."


# ─── Upsert ────────────────────────────────────────────────────────────

def merge_audit_report(existing: Optional[dict], incoming: Optional[dict], saved_at: str) -> Optional[dict]:
    """Keep the newest snapshot as ``latest`` and the last 12 in ``history``."""
    if not incoming:
        return existing
    history = (existing or {}).get("history")
    history = history if isinstance(history, list) else []
    entry = {"saved_at": saved_at, **incoming}
    return {"latest": entry, "history": (history + [entry])[-AUDIT_HISTORY_LIMIT:]}


def _normalize_optional_website(value: str) -> str:
    """Normalised URL, or the raw text when it does not parse as one."""
    raw = value.strip()
    if not raw:
        return ""
    try:
        return normalize_website_url(raw)
    except ValueError:
        return raw


async def find_lead_by_email(db: AsyncSession, email: str) -> Optional[Lead]:
    result = await db.execute(
        select(Lead).where(Lead.email == email.strip().lower()).order_by(Lead.created_at.desc()).limit(1)
    )
    return result.scalar_one_or_none()


async def capture_lead(db: AsyncSession, payload: dict) -> tuple[Lead, bool]:
    """
    Upsert a lead by email. Returns (lead, created).
    An existing lead keeps its values wherever the new payload is blank.
    """
    name = _clean(payload.get("name"), 120)
    email = _clean(payload.get("email"), 180).lower()
    phone = _clean(payload.get("phone"), 40)
    business_name = _clean(payload.get("business_name"), 140)
    website = _normalize_optional_website(_clean(payload.get("website"), 500))
    source = _clean(payload.get("source"), 60) or "unknown"
    page_path = _clean(payload.get("page_path"), 240)
    message = _clean(payload.get("message"), 2000)
    industry = _clean(payload.get("industry"), 120)
    consent = payload.get("consent_weekly")
    now = _utcnow()

    if email and not EMAIL_RE.match(email):
        raise ValueError("Please provide a valid email address.")

    existing = await find_lead_by_email(db, email) if email else None
    if existing:
        existing.full_name = name or existing.full_name
        existing.mobile_number = phone or existing.mobile_number
        existing.business_name = business_name or existing.business_name
        existing.website_url = website or existing.website_url
        existing.industry = industry or existing.industry
        existing.message = message or existing.message
        existing.source = source
        existing.page_path = page_path or existing.page_path
        if isinstance(consent, bool):
            existing.consent_weekly = consent
        existing.audit_report = merge_audit_report(
            existing.audit_report, payload.get("audit_report"), now.isoformat()
        )
        existing.last_seen_at = now
        await log_activity(
            "lead", existing.id, "updated", description=f"Seen again via {source}", icon="🔁", db=db,
        )
        await db.commit()
        logger.info("🔁 Lead %s updated via %s", existing.id, source)
        return existing, False

    lead = Lead(
        full_name=name or "Unknown",
        mobile_number=phone or None,
        business_name=business_name or "Unknown Business",
        website_url=website or None,
        email=email or None,
        industry=industry or "General",
        message=message or None,
        source=source,
        page_path=page_path or None,
        consent_weekly=bool(consent),
        audit_report=merge_audit_report(None, payload.get("audit_report"), now.isoformat()),
        last_seen_at=now,
    )
    db.add(lead)
    await db.flush()
    await log_activity(
        "lead", lead.id, "created", description=f"Captured via {source}", icon="🧲",
        actor=f"lead:{lead.full_name}", db=db,
    )
    await db.commit()
    logger.info("🧲 Lead %s captured via %s", lead.id, source)
    return lead, True


async def submit_contact_lead(db: AsyncSession, payload: dict) -> dict:
    """
    Contact form flow: validate, store, forward to CRM.
    Raises LeadValidationError listing every problem.
    """
    lead = normalize_lead_payload(payload)
    errors = validate_lead_payload(lead, require_message=lead["source"] != "chatbot")
    if errors:
        raise LeadValidationError(errors)

    source = lead["source"] or "website-form"
    stored, _created = await capture_lead(db, {
        "name": lead["name"],
        "email": lead["email"],
        "phone": lead["phone"],
        "business_name": lead["company"],
        "website": lead["website"],
        "message": lead["message"],
        "industry": lead["industry"],
        "source": source,
    })
    forwarded, message = await forward_to_crm({**lead, "source": source})
    return {"success": True, "crm_forwarded": forwarded, "message": message, "lead_id": stored.id}


async def list_recent_leads(db: AsyncSession, limit: int = 40) -> list[Lead]:
    result = await db.execute(select(Lead).order_by(Lead.created_at.desc()).limit(limit))
    return list(result.scalars().all())
