"""
DBA Funnel: SQLAlchemy ORM model for website-audit scans.

A scan moves QUEUED -> PROCESSING -> COMPLETE | FAILED and never back.
Progress only grows.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.types import JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from funnel.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


SCAN_QUEUED = "QUEUED"
SCAN_PROCESSING = "PROCESSING"
SCAN_COMPLETE = "COMPLETE"
SCAN_FAILED = "FAILED"

STATUS_RANK = {
    SCAN_QUEUED: 0,
    SCAN_PROCESSING: 1,
    SCAN_COMPLETE: 2,
    SCAN_FAILED: 2,
}
TERMINAL_STATUSES = frozenset({SCAN_COMPLETE, SCAN_FAILED})


class ScanTransitionError(ValueError):
    """Raised when a scan status would move backwards or leave a terminal state."""

    def __init__(self, scan_id: str | None, current: str, requested: str):
        self.scan_id = scan_id
        self.current = current
        self.requested = requested
        super().__init__(f"Scan {scan_id} cannot move from {current} to {requested}")


def can_transition(current: str | None, requested: str) -> bool:
    if requested not in STATUS_RANK:
        return False
    if current is None or current == requested:
        return True
    if current in TERMINAL_STATUSES:
        return False
    return STATUS_RANK[requested] > STATUS_RANK[current]


class Scan(Base):
    __tablename__ = "scans"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    lead_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("leads.id", ondelete="SET NULL"), nullable=True, unique=True
    )

    status: Mapped[str] = mapped_column(String(20), default=SCAN_QUEUED, index=True)
    progress: Mapped[int] = mapped_column(Integer, default=4)

    website_url: Mapped[str] = mapped_column(String(512), nullable=False)
    concern: Mapped[str] = mapped_column(String(40), default="All of it")
    industry: Mapped[str] = mapped_column(String(120), default="General")
    competitors: Mapped[list | None] = mapped_column(JSON, nullable=True)

    # Audit output (JSON for SQLite compat)
    scores: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    checks: Mapped[list | None] = mapped_column(JSON, nullable=True)
    insights: Mapped[list | None] = mapped_column(JSON, nullable=True)
    recommendations: Mapped[list | None] = mapped_column(JSON, nullable=True)
    narrative: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    upgrade_cards: Mapped[list | None] = mapped_column(JSON, nullable=True)
    raw_result: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    report_path: Mapped[str | None] = mapped_column(String(512), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timing
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    lead: Mapped["Lead"] = relationship(back_populates="scan")  # noqa: F821

    @validates("status")
    def _validate_status(self, key, value):
        if not can_transition(self.status, value):
            raise ScanTransitionError(self.id, self.status, value)
        return value

    @validates("progress")
    def _validate_progress(self, key, value):
        value = max(0, min(100, int(value)))
        return max(self.progress or 0, value)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "lead_id": self.lead_id,
            "status": self.status,
            "progress": self.progress,
            "website_url": self.website_url,
            "concern": self.concern,
            "industry": self.industry,
            "scores": self.scores,
            "checks": self.checks or [],
            "insights": self.insights or [],
            "recommendations": self.recommendations or [],
            "narrative": self.narrative,
            "upgrade_cards": self.upgrade_cards or [],
            "report_ready": bool(self.report_path),
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
