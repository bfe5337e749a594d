"""
DBA Funnel: value objects produced by the website audit engine.
"""

from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, model_validator


AUDIT_REASONS = (
    "No leads",
    "Low conversion",
    "Slow replies",
    "Bad SEO",
    "Need website",
    "All of it",
)
DEFAULT_AUDIT_REASON = "All of it"

CATEGORY_ORDER = ("Speed", "SEO", "Conversion", "Trust", "Visibility")

AuditCategory = Literal["Speed", "SEO", "Conversion", "Trust", "Visibility"]
RAG = Literal["green", "amber", "red"]


class ScanStatus(str, Enum):
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


class AuditCheck(BaseModel):
    """One scored heuristic. A green check never carries a score delta."""

    id: str
    category: AuditCategory
    label: str
    status: RAG
    score_delta: int = 0
    evidence: str = ""
    fix: str = ""
    effort: Literal["S", "M", "L"] = "S"
    impact: Literal["Low", "Med", "High"] = "Med"

    model_config = {"frozen": True}

    @model_validator(mode="before")
    @classmethod
    def _green_has_no_delta(cls, data):
        if isinstance(data, dict) and data.get("status") == "green":
            data = {**data, "score_delta": 0}
        return data


class AuditScores(BaseModel):
    overall: int = Field(..., ge=0, le=100)
    speed: int = Field(..., ge=0, le=100)
    seo: int = Field(..., ge=0, le=100)
    conversion: int = Field(..., ge=0, le=100)
    trust: int = Field(..., ge=0, le=100)
    visibility: int = Field(..., ge=0, le=100)

    model_config = {"frozen": True}


class CategoryScore(BaseModel):
    category: AuditCategory
    score: int
    rag: RAG


class Narrative(BaseModel):
    executive_summary: str
    why_it_matters: str
    next_steps: list[str] = []


class PsiMetrics(BaseModel):
    performance_score: int
    lcp_ms: int | None = None
    cls: float | None = None
    inp_ms: int | None = None


class CompetitorResult(BaseModel):
    domain: str
    scores: AuditScores
    top_wins: list[str] = []
    top_gaps: list[str] = []


class UpgradeCard(BaseModel):
    title: str
    reason: str
    service_slug: str
    from_price: str


class RecommendedModule(BaseModel):
    id: str
    title: str
    why: str
    action: str
    href: str
    service_slug: str | None = None
    phase: Literal["Day 1-3", "Day 4-7", "Day 8-14"]
    price_label: str


class AuditResult(BaseModel):
    url: str
    industry: str | None = None
    goal: str | None = None
    generated_at: str
    scores: AuditScores
    categories: list[CategoryScore]
    checks: list[AuditCheck]
    top_findings: list[AuditCheck]
    narrative: Narrative
    page_experience: dict = {}
    visibility_signals: dict = {}
    competitors: list[CompetitorResult] = []
    recommended_modules: list[RecommendedModule] = []
    fetch_error: str | None = None
