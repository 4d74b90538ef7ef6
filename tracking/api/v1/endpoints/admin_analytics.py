# backend/tracking/api/v1/endpoints/admin_analytics.py
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from tracking.dependencies import verify_admin_api_key
from tracking.core.db import get_db
from tracking.services import event_log

router = APIRouter(prefix="/admin/analytics", tags=["Admin Analytics"], dependencies=[Depends(verify_admin_api_key)])

@router.get("/events")
async def get_events_summary(days: int = Query(7, ge=1, le=365), db: AsyncSession = Depends(get_db)):
    """Per event name: how many were relayed, delivered, rejected as duplicates or failed."""
    return {"days": days, "events": await event_log.get_events_summary(db, days=days)}

@router.get("/top_viewed_products")
async def get_top_viewed_products(limit: int = Query(10, ge=1, le=100), db: AsyncSession = Depends(get_db)):
    """Most viewed products according to delivered ViewContent events."""
    return await event_log.get_top_viewed_products(db, limit=limit)
