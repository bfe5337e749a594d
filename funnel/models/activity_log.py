"""
DBA Funnel: activity log model.
Timeline of lead, scan, booking and portal events for the admin surface.
"""

import uuid

from sqlalchemy import Column, String, Text, DateTime, JSON, func

from funnel.database import Base


class ActivityLog(Base):
    """Append-only trail of funnel events."""
    __tablename__ = "activity_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # What entity this log belongs to
    entity_type = Column(String(20), nullable=False)   # "lead", "scan", "booking", "portal"
    entity_id = Column(String(40), nullable=False, index=True)

    # What happened
    action = Column(String(50), nullable=False)          # e.g. "created", "queued", "completed"
    description = Column(Text, default="")
    icon = Column(String(10), default="📋")

    # Who did it
    actor = Column(String(200), default="system")        # "system", "admin", "lead:Jane Doe"

    extra_data = Column("metadata", JSON, default=dict)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "description": self.description,
            "icon": self.icon,
            "actor": self.actor,
            "metadata": self.extra_data or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ActivityLog {self.entity_type}/{self.entity_id}: {self.action}>"
