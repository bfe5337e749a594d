"""
DBA Funnel: SQLAlchemy ORM models for leads and portal sessions.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String, Text
from sqlalchemy.types import JSON
from sqlalchemy.orm import Mapped, mapped_column, relationship

from funnel.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Lead(Base):
    __tablename__ = "leads"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    full_name: Mapped[str] = mapped_column(String(120), nullable=False)
    business_name: Mapped[str] = mapped_column(String(140), nullable=False)
    mobile_number: Mapped[str | None] = mapped_column(String(40), nullable=True)
    email: Mapped[str | None] = mapped_column(String(180), nullable=True, index=True)
    website_url: Mapped[str | None] = mapped_column(String(512), nullable=True)

    reason: Mapped[str] = mapped_column(String(40), default="All of it")
    industry: Mapped[str] = mapped_column(String(120), default="General")
    message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Where the lead came from
    source: Mapped[str] = mapped_column(String(60), default="website")
    page_path: Mapped[str | None] = mapped_column(String(240), nullable=True)
    consent_weekly: Mapped[bool] = mapped_column(Boolean, default=False)

    # {"latest": {...}, "history": [...]} snapshots posted by the site
    audit_report: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    last_seen_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )

    # Relationships
    scan: Mapped["Scan"] = relationship(  # noqa: F821
        back_populates="lead", uselist=False
    )
    portal_sessions: Mapped[list["PortalSession"]] = relationship(
        back_populates="lead", cascade="all, delete-orphan"
    )

    def to_summary(self) -> dict:
        return {
            "id": self.id,
            "full_name": self.full_name,
            "business_name": self.business_name,
            "email": self.email,
            "website_url": self.website_url,
        }

    def to_dict(self) -> dict:
        return {
            **self.to_summary(),
            "mobile_number": self.mobile_number,
            "reason": self.reason,
            "industry": self.industry,
            "message": self.message,
            "source": self.source,
            "page_path": self.page_path,
            "consent_weekly": self.consent_weekly,
            "audit_report": self.audit_report,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "last_seen_at": self.last_seen_at.isoformat() if self.last_seen_at else None,
        }


class PortalSession(Base):
    __tablename__ = "portal_sessions"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    lead_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("leads.id", ondelete="CASCADE"), nullable=False
    )
    token: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )

    lead: Mapped["Lead"] = relationship(back_populates="portal_sessions")

    __table_args__ = (
        Index("ix_portal_sessions_expires", "expires_at"),
    )

    def is_expired(self, now: datetime | None = None) -> bool:
        return _as_utc(self.expires_at) <= (now or _utcnow())
