"""
DBA Funnel: activity log writer and reader.
"""

import logging
import uuid

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from funnel.database import async_session
from funnel.models.activity_log import ActivityLog

logger = logging.getLogger(__name__)


async def log_activity(
    entity_type: str,
    entity_id: str,
    action: str,
    description: str = "",
    icon: str = "📋",
    actor: str = "system",
    metadata: dict | None = None,
    db: AsyncSession | None = None,
) -> None:
    """
    Record an activity log entry.
    With a session the entry rides on the caller's commit; without one it
    opens its own. A failed write is logged, never raised.
    """
    entry = ActivityLog(
        id=str(uuid.uuid4()),
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        description=description,
        icon=icon,
        actor=actor,
        extra_data=metadata or {},
    )

    try:
        if db is not None:
            db.add(entry)
        else:
            async with async_session() as session:
                session.add(entry)
                await session.commit()
    except Exception as e:
        logger.warning("Failed to write activity log: %s", e)


async def list_activities(
    db: AsyncSession,
    entity_type: str | None = None,
    entity_id: str | None = None,
    limit: int = 100,
) -> list[ActivityLog]:
    stmt = select(ActivityLog).order_by(ActivityLog.created_at.desc()).limit(limit)
    if entity_type:
        stmt = stmt.where(ActivityLog.entity_type == entity_type)
    if entity_id:
        stmt = stmt.where(ActivityLog.entity_id == entity_id)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def count_by_action(db: AsyncSession, entity_type: str) -> dict[str, int]:
    stmt = (
        select(ActivityLog.action, func.count(ActivityLog.id))
        .where(ActivityLog.entity_type == entity_type)
        .group_by(ActivityLog.action)
    )
    result = await db.execute(stmt)
    return {action: count for action, count in result.all()}
