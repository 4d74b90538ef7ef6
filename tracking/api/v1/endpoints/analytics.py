# backend/tracking/api/v1/endpoints/analytics.py
import logging
from fastapi import APIRouter, Depends, HTTPException, Query, status
from typing import Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tracking.core.db import get_db
from tracking.dependencies import get_request_context, verify_admin_api_key
from tracking.models.beacons import PageViewPayload
from tracking.models.pagination import Pagination
from tracking.services import page_views
from tracking.utils.request_context import RequestContext

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/track", status_code=status.HTTP_201_CREATED, summary="Track a page view")
async def track_page_view(
    payload: PageViewPayload,
    context: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    """Public beacon sent by the storefront on every navigation."""
    if not payload.visitor_id or not payload.session_id or not payload.page:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing required fields: visitorId, sessionId, page",
        )
    try:
        page_view = await page_views.record_page_view(
            db,
            visitor_id=payload.visitor_id,
            session_id=payload.session_id,
            page=payload.page,
            referrer=payload.referrer,
            context=context,
            user_id=payload.user_id,
        )
    except SQLAlchemyError as e:
        logger.error(f"Error tracking page view: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to track page view")

    return {
        "success": True,
        "data": {"id": page_view.id, "timestamp": page_view.created_at.isoformat()},
    }


@router.get("/stats", summary="Visitor statistics", dependencies=[Depends(verify_admin_api_key)])
async def get_visitor_stats(
    days: int = Query(7, ge=1, le=365, description="Lookback window in days"),
    db: AsyncSession = Depends(get_db),
):
    stats = await page_views.get_visitor_stats(db, days=days)
    return {"success": True, "data": stats}


@router.get("/views", summary="List page views", dependencies=[Depends(verify_admin_api_key)])
async def get_page_views(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    device: Optional[str] = Query(None, description="mobile, tablet, desktop or unknown"),
    days: int = Query(7, ge=1, le=365),
    db: AsyncSession = Depends(get_db),
):
    rows, total = await page_views.list_page_views(db, page=page, limit=limit, device=device, days=days)
    return {
        "success": True,
        "data": [page_views.serialize_page_view(pv) for pv in rows],
        "pagination": Pagination.build(page=page, limit=limit, total=total).model_dump(),
    }
