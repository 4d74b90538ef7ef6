# backend/tracking/services/event_log.py
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func, desc, case
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tracking.models.analytics import TrackedEvent, utcnow
from tracking.models.events import EventName, TrackResult

logger = logging.getLogger(__name__)

# Raw identifiers never reach the reporting database.
PII_KEYS = frozenset({"email", "phone", "userId", "fbp", "fbclid"})


def redact(event_data: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {k: v for k, v in (event_data or {}).items() if k not in PII_KEYS}


async def save_tracked_event(
    session_factory: async_sessionmaker,
    event_name: Optional[str],
    event_id: Optional[str],
    event_data: Optional[Dict[str, Any]],
    result: TrackResult,
    channel: str = "track",
) -> None:
    """Background task: stores the outcome of one tracked event. Errors are logged only."""
    if not event_name or not event_id:
        return
    try:
        async with session_factory() as db:
            db.add(TrackedEvent(
                event_id=event_id,
                event_name=event_name,
                channel=channel,
                success=result.success,
                duplicate=result.duplicate,
                error=result.error,
                event_data=redact(event_data),
            ))
            await db.commit()
    except SQLAlchemyError as e:
        logger.error(f"Failed to store tracked event {event_id}: {e}")


async def get_events_summary(db: AsyncSession, days: int = 7) -> List[Dict[str, Any]]:
    total = func.count(TrackedEvent.id).label("total")
    query = (
        select(
            TrackedEvent.event_name,
            total,
            func.sum(case((TrackedEvent.success.is_(True), 1), else_=0)).label("successful"),
            func.sum(case((TrackedEvent.duplicate.is_(True), 1), else_=0)).label("duplicates"),
        )
        .where(TrackedEvent.created_at >= utcnow() - timedelta(days=days))
        .group_by(TrackedEvent.event_name)
        .order_by(desc(total))
    )
    rows = (await db.execute(query)).all()
    return [
        {
            "eventName": r.event_name,
            "total": r.total,
            "successful": int(r.successful or 0),
            "duplicates": int(r.duplicates or 0),
            "failed": r.total - int(r.successful or 0) - int(r.duplicates or 0),
        }
        for r in rows
    ]


async def get_top_viewed_products(db: AsyncSession, limit: int = 10) -> List[Dict[str, Any]]:
    product_id = TrackedEvent.event_data['product_id'].as_string().label('product_id')
    views = func.count(TrackedEvent.id).label('views')
    query = (
        select(product_id, views)
        .where(TrackedEvent.event_name == EventName.VIEW_CONTENT.value, TrackedEvent.success.is_(True))
        .group_by(product_id)
        .order_by(desc(views))
        .limit(limit)
    )
    rows = (await db.execute(query)).all()
    return [{"product_id": r.product_id, "views": r.views} for r in rows if r.product_id is not None]
