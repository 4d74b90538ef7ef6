# backend/tracking/api/v1/endpoints/link_clicks.py
import logging
from datetime import date
from fastapi import APIRouter, Depends, HTTPException, Query, status
from typing import Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tracking.core.db import get_db
from tracking.dependencies import get_request_context, verify_admin_api_key
from tracking.models.beacons import LinkClickPayload, LinkType
from tracking.models.pagination import Pagination
from tracking.services import link_clicks
from tracking.utils.request_context import RequestContext

logger = logging.getLogger(__name__)

router = APIRouter()

_LINK_TYPES = {t.value for t in LinkType}


@router.post("/track", summary="Track a lead link click")
async def track_link_click(
    payload: LinkClickPayload,
    context: RequestContext = Depends(get_request_context),
    db: AsyncSession = Depends(get_db),
):
    """Public: WhatsApp / email / phone / inquiry clicks from product pages."""
    if payload.link_type not in _LINK_TYPES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Valid linkType is required")
    try:
        click = await link_clicks.record_link_click(db, payload, context)
    except SQLAlchemyError as e:
        logger.error(f"Link click tracking error: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to track link click")
    return {"success": True, "data": click.to_dict()}


@router.get("", summary="List link clicks", dependencies=[Depends(verify_admin_api_key)])
async def get_link_clicks(
    link_type: Optional[str] = Query(None, alias="linkType"),
    product_id: Optional[str] = Query(None, alias="productId"),
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    rows, total = await link_clicks.list_link_clicks(
        db,
        link_type=link_type,
        product_id=product_id,
        start_date=start_date,
        end_date=end_date,
        page=page,
        limit=limit,
    )
    return {
        "success": True,
        "data": [click.to_dict() for click in rows],
        "pagination": Pagination.build(page=page, limit=limit, total=total).model_dump(),
    }


@router.get("/stats", summary="Link click statistics", dependencies=[Depends(verify_admin_api_key)])
async def get_link_click_stats(
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    db: AsyncSession = Depends(get_db),
):
    stats = await link_clicks.get_link_click_stats(db, start_date=start_date, end_date=end_date)
    return {"success": True, "data": stats}


@router.delete("", summary="Reset all link clicks", dependencies=[Depends(verify_admin_api_key)])
async def reset_link_clicks(db: AsyncSession = Depends(get_db)):
    deleted = await link_clicks.reset_link_clicks(db)
    logger.info(f"Link clicks reset: {deleted} records deleted")
    return {"success": True, "message": f"Deleted {deleted} link click records", "deletedCount": deleted}


@router.delete("/{click_id}", summary="Delete a link click", dependencies=[Depends(verify_admin_api_key)])
async def delete_link_click(click_id: int, db: AsyncSession = Depends(get_db)):
    if not await link_clicks.delete_link_click(db, click_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Link click record not found")
    logger.info(f"Link click {click_id} deleted")
    return {"success": True, "message": "Link click record deleted"}
