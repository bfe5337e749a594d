"""
DBA Funnel: Pydantic request/response schemas.

Form payloads arrive camelCased from the site, so request models accept
both the alias and the field name. Field-level rules (required fields,
phone and email patterns) are enforced by the services so the routes can
answer with the site's ``{success: false, error}`` shape instead of 422s.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from funnel.schemas.audit import (  # noqa: F401
    AUDIT_REASONS,
    AuditCheck,
    AuditResult,
    AuditScores,
    ScanStatus,
    UpgradeCard,
)


class _FormModel(BaseModel):
    model_config = {"populate_by_name": True, "str_strip_whitespace": True}


# ── Website audit ──────────────────────────────────────

class WebsiteAuditRequest(_FormModel):
    full_name: str = Field("", alias="fullName")
    mobile_number: str = Field("", alias="mobileNumber")
    business_name: str = Field("", alias="businessName")
    website_url: str = Field("", alias="websiteUrl")
    reason: str = ""
    email: str = ""
    industry: str = ""
    competitors: str = ""


class WebsiteAuditStartResponse(BaseModel):
    success: bool = True
    scan_id: str
    status_url: str
    results_url: str


class ScanStatusResponse(BaseModel):
    success: bool = True
    scan_id: str
    status: ScanStatus
    progress: int
    website_url: str
    concern: str | None = None
    industry: str | None = None
    scores: dict | None = None
    checks: list[dict] = []
    insights: list[str] = []
    recommendations: list[str] = []
    narrative: dict | None = None
    upgrade_cards: list[dict] = []
    recommended_modules: list[dict] = []
    error_message: str | None = None
    download_url: str | None = None
    report_url: str | None = None
    lead: dict | None = None
    created_at: datetime | str | None = None
    started_at: datetime | str | None = None
    completed_at: datetime | str | None = None


# ── Lead capture ───────────────────────────────────────

class LeadCaptureRequest(_FormModel):
    """Generic capture used by newsletter, tool and popup forms."""
    name: str = ""
    email: str = ""
    phone: str = ""
    business_name: str = Field("", alias="businessName")
    website: str = ""
    source: str = ""
    page_path: str = Field("", alias="pagePath")
    consent_weekly: bool | None = Field(None, alias="consentWeekly")
    audit_report: dict | None = Field(None, alias="auditReport")


class ContactLeadRequest(_FormModel):
    name: str = ""
    email: str = ""
    phone: str = ""
    company: str = ""
    website: str = ""
    message: str = ""
    budget_range: str = Field("", alias="budgetRange")
    timeline: str = ""
    industry: str = ""
    source: str = ""


class LeadSubmissionResponse(BaseModel):
    success: bool
    crm_forwarded: bool = False
    message: str
    lead_id: str | None = None
    errors: list[str] = []


# ── Bookings ───────────────────────────────────────────

class BookingRequest(_FormModel):
    date: str = ""
    time: str = ""
    name: str = ""
    email: str = ""
    phone: str = ""
    company: str = ""
    website: str = ""
    industry: str = ""
    goals: str = ""


# ── Portal / admin ─────────────────────────────────────

class PortalLinkRequest(_FormModel):
    email: str = ""


class AdminLoginRequest(BaseModel):
    password: str = ""


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = "1.0.0"
    timestamp: str | None = None
    database: str = "connected"
    queued_scans: int = 0
