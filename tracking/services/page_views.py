# backend/tracking/services/page_views.py
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, func, distinct, desc
from sqlalchemy.ext.asyncio import AsyncSession

from tracking.models.analytics import PageView, utcnow
from tracking.utils.request_context import RequestContext
from tracking.utils.user_agent import classify

logger = logging.getLogger(__name__)


async def record_page_view(
    db: AsyncSession,
    visitor_id: str,
    session_id: str,
    page: str,
    referrer: Optional[str],
    context: RequestContext,
    user_id: Optional[str] = None,
) -> PageView:
    user_agent = context.user_agent or ""
    device, browser, os_name = classify(user_agent)
    page_view = PageView(
        visitor_id=visitor_id,
        session_id=session_id,
        page=page,
        referrer=referrer or "",
        user_agent=user_agent,
        device=device,
        browser=browser,
        os=os_name,
        ip_address=context.client_ip,
        user_id=user_id,
    )
    db.add(page_view)
    await db.commit()
    await db.refresh(page_view)
    logger.info(f"Page view tracked: {page} by visitor {visitor_id}")
    return page_view


async def get_visitor_stats(db: AsyncSession, days: int = 7) -> Dict[str, Any]:
    """Aggregates page views over the last `days` days."""
    start_date = utcnow() - timedelta(days=days)
    in_window = PageView.created_at >= start_date

    total_views = (await db.execute(select(func.count(PageView.id)).where(in_window))).scalar_one()
    unique_visitors = (await db.execute(
        select(func.count(distinct(PageView.visitor_id))).where(in_window)
    )).scalar_one()
    unique_sessions = (await db.execute(
        select(func.count(distinct(PageView.session_id))).where(in_window)
    )).scalar_one()

    day = func.date(PageView.created_at).label("day")
    views_by_day_rows = await db.execute(
        select(day, func.count(PageView.id).label("views"), func.count(distinct(PageView.visitor_id)).label("visitors"))
        .where(in_window)
        .group_by(day)
        .order_by(day)
    )
    views_by_day = [{"date": str(r.day), "views": r.views, "visitors": r.visitors} for r in views_by_day_rows.all()]

    views = func.count(PageView.id).label("views")
    top_pages_rows = await db.execute(
        select(PageView.page, views, func.count(distinct(PageView.visitor_id)).label("visitors"))
        .where(in_window)
        .group_by(PageView.page)
        .order_by(desc(views))
        .limit(10)
    )
    top_pages = [{"page": r.page, "views": r.views, "visitors": r.visitors} for r in top_pages_rows.all()]

    device_breakdown = await _breakdown(db, PageView.device, in_window)
    browser_breakdown = (await _breakdown(db, PageView.browser, in_window))[:5]

    today_start = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
    since_today = PageView.created_at >= today_start
    today_views = (await db.execute(select(func.count(PageView.id)).where(since_today))).scalar_one()
    today_visitors = (await db.execute(
        select(func.count(distinct(PageView.visitor_id))).where(since_today)
    )).scalar_one()

    return {
        "summary": {
            "totalViews": total_views,
            "uniqueVisitors": unique_visitors,
            "uniqueSessions": unique_sessions,
            "avgViewsPerVisitor": round(total_views / unique_visitors, 1) if unique_visitors else 0,
        },
        "today": {"views": today_views, "visitors": today_visitors},
        "viewsByDay": views_by_day,
        "topPages": top_pages,
        "deviceBreakdown": device_breakdown,
        "browserBreakdown": browser_breakdown,
    }


async def _breakdown(db: AsyncSession, column, condition) -> List[Dict[str, Any]]:
    count = func.count(PageView.id).label("count")
    rows = await db.execute(select(column.label("name"), count).where(condition).group_by(column).order_by(desc(count)))
    return [{"name": r.name, "count": r.count} for r in rows.all()]


async def list_page_views(
    db: AsyncSession,
    page: int = 1,
    limit: int = 50,
    device: Optional[str] = None,
    days: int = 7,
) -> Tuple[List[PageView], int]:
    conditions = [PageView.created_at >= utcnow() - timedelta(days=days)]
    if device:
        conditions.append(PageView.device == device)

    total = (await db.execute(select(func.count(PageView.id)).where(*conditions))).scalar_one()
    result = await db.execute(
        select(PageView)
        .where(*conditions)
        .order_by(desc(PageView.created_at), desc(PageView.id))
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars().all()), total


def serialize_page_view(pv: PageView) -> Dict[str, Any]:
    return {
        "id": pv.id,
        "visitorId": pv.visitor_id,
        "sessionId": pv.session_id,
        "page": pv.page,
        "referrer": pv.referrer,
        "device": pv.device,
        "browser": pv.browser,
        "os": pv.os,
        "ipAddress": pv.ip_address,
        "userId": pv.user_id,
        "createdAt": pv.created_at.isoformat() if pv.created_at else None,
    }
