# backend/tracking/services/link_clicks.py
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, func, desc, delete
from sqlalchemy.ext.asyncio import AsyncSession

from tracking.models.analytics import LinkClick, utcnow
from tracking.models.beacons import LinkClickPayload
from tracking.utils.request_context import RequestContext

logger = logging.getLogger(__name__)


async def record_link_click(db: AsyncSession, payload: LinkClickPayload, context: RequestContext) -> LinkClick:
    source = payload.source
    click = LinkClick(
        user_id=payload.user_id,
        link_type=payload.link_type,
        product_id=payload.product_id,
        product_name=payload.product_name,
        destination=payload.destination,
        source_page=(source.page if source else None) or context.referer or "unknown",
        source_referrer=source.referrer if source else None,
        user_agent=context.user_agent,
        ip_address=context.client_ip,
    )
    db.add(click)
    await db.commit()
    await db.refresh(click)
    logger.info(f"Link click tracked: {payload.link_type} product={payload.product_id} user={payload.user_id or 'anonymous'}")
    return click


def _date_conditions(start_date: Optional[date], end_date: Optional[date]) -> list:
    conditions = []
    if start_date:
        conditions.append(LinkClick.created_at >= datetime.combine(start_date, time.min, tzinfo=timezone.utc))
    if end_date:
        # end date is inclusive
        conditions.append(LinkClick.created_at <= datetime.combine(end_date, time.max, tzinfo=timezone.utc))
    return conditions


async def list_link_clicks(
    db: AsyncSession,
    link_type: Optional[str] = None,
    product_id: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    page: int = 1,
    limit: int = 50,
) -> Tuple[List[LinkClick], int]:
    conditions = _date_conditions(start_date, end_date)
    if link_type:
        conditions.append(LinkClick.link_type == link_type)
    if product_id:
        conditions.append(LinkClick.product_id == product_id)

    total = (await db.execute(select(func.count(LinkClick.id)).where(*conditions))).scalar_one()
    result = await db.execute(
        select(LinkClick)
        .where(*conditions)
        .order_by(desc(LinkClick.created_at), desc(LinkClick.id))
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(result.scalars().all()), total


async def get_link_click_stats(
    db: AsyncSession,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> Dict[str, Any]:
    conditions = _date_conditions(start_date, end_date)
    count = func.count(LinkClick.id).label("count")

    total = (await db.execute(select(func.count(LinkClick.id)).where(*conditions))).scalar_one()

    by_type_rows = await db.execute(
        select(LinkClick.link_type, count).where(*conditions).group_by(LinkClick.link_type).order_by(desc(count))
    )
    by_type = [{"linkType": r.link_type, "count": r.count} for r in by_type_rows.all()]

    day = func.date(LinkClick.created_at).label("day")
    by_date_rows = await db.execute(
        select(day, count)
        .where(LinkClick.created_at >= utcnow() - timedelta(days=7))
        .group_by(day)
        .order_by(day)
    )
    by_date = [{"date": str(r.day), "count": r.count} for r in by_date_rows.all()]

    top_products_rows = await db.execute(
        select(LinkClick.product_id, func.max(LinkClick.product_name).label("product_name"), count)
        .where(*conditions, LinkClick.product_id.is_not(None))
        .group_by(LinkClick.product_id)
        .order_by(desc(count))
        .limit(10)
    )
    top_products = [
        {"productId": r.product_id, "productName": r.product_name, "count": r.count}
        for r in top_products_rows.all()
    ]

    return {"total": total, "byType": by_type, "byDate": by_date, "topProducts": top_products}


async def reset_link_clicks(db: AsyncSession) -> int:
    result = await db.execute(delete(LinkClick))
    await db.commit()
    return result.rowcount or 0


async def delete_link_click(db: AsyncSession, click_id: int) -> bool:
    click = await db.get(LinkClick, click_id)
    if click is None:
        return False
    await db.delete(click)
    await db.commit()
    return True
