# backend/tracking/api/v1/endpoints/events.py
import asyncio
import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends, HTTPException, status, BackgroundTasks, Request
from typing import Any, Dict, Optional
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import async_sessionmaker

from tracking.core.config import settings
from tracking.core.db import get_session_factory
from tracking.dependencies import get_capi_service, get_request_context, verify_admin_api_key
from tracking.models.events import BatchPayload, EventName, PurchasePayload, TrackEventPayload, TrackResult
from tracking.services.event_log import save_tracked_event
from tracking.services.meta_capi import MetaCAPIService, MISSING_FIELDS_ERROR, NOT_CONFIGURED_ERROR
from tracking.utils.request_context import RequestContext

logger = logging.getLogger(__name__)

router = APIRouter()

_EVENT_NAMES = {e.value for e in EventName}


def _ensure_configured(capi_service: MetaCAPIService):
    if not capi_service.is_configured:
        logger.warning("Meta credentials not configured")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=NOT_CONFIGURED_ERROR)


def _validation_error(event_name: Optional[str], event_id: Optional[str]) -> Optional[str]:
    if not event_name or not event_id:
        return MISSING_FIELDS_ERROR
    if event_name not in _EVENT_NAMES:
        return f"Unsupported eventName '{event_name}'"
    return None


def _with_click_ids(event_data: Dict[str, Any], request: Request, context: RequestContext) -> Dict[str, Any]:
    """Adds the _fbp cookie and the fbclid query param; they win over client-sent values."""
    enriched = dict(event_data)
    if context.fbp:
        enriched["fbp"] = context.fbp
    fbclid = request.query_params.get("fbclid")
    if fbclid:
        enriched["fbclid"] = fbclid
    return enriched


@router.post(
    "/track",
    summary="Track a single event",
    description="Relays a storefront event to the Meta Conversions API. Deduplicated by eventId.",
)
async def track_event(
    payload: TrackEventPayload,
    request: Request,
    background_tasks: BackgroundTasks,
    context: RequestContext = Depends(get_request_context),
    capi_service: MetaCAPIService = Depends(get_capi_service),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    error = _validation_error(payload.event_name, payload.event_id)
    if error:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=error)
    _ensure_configured(capi_service)

    event_data = _with_click_ids(payload.event_data or {}, request, context)
    result = await capi_service.track_event(payload.event_name, event_data, payload.event_id, context)

    logger.info(
        f"Event tracked: {payload.event_name} id={payload.event_id} "
        f"occurred_at={payload.timestamp} success={result.success}"
    )
    background_tasks.add_task(
        save_tracked_event, session_factory, payload.event_name, payload.event_id, event_data, result, "track"
    )
    return result.to_response()


@router.post(
    "/purchase",
    summary="Track a purchase",
    description="Conversion endpoint: maps an order onto a Purchase event.",
)
async def track_purchase(
    payload: PurchasePayload,
    background_tasks: BackgroundTasks,
    context: RequestContext = Depends(get_request_context),
    capi_service: MetaCAPIService = Depends(get_capi_service),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    if not payload.order_id or not payload.items or payload.value is None or not payload.event_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="orderId, items, value, and eventId are required",
        )
    _ensure_configured(capi_service)

    currency = payload.currency or "USD"
    purchase_data: Dict[str, Any] = {
        "order_id": payload.order_id,
        "items": [
            {
                "product_id": item.id,
                "product_name": item.title,
                "price": item.price,
                "quantity": item.quantity or 1,
            }
            for item in payload.items
        ],
        "total_value": payload.value,
        "currency": currency,
    }
    if payload.email:
        purchase_data["email"] = payload.email
    if payload.user_id:
        purchase_data["userId"] = payload.user_id
    if context.fbp:
        purchase_data["fbp"] = context.fbp

    result = await capi_service.track_event(EventName.PURCHASE.value, purchase_data, payload.event_id, context)

    logger.info(
        f"Purchase event tracked: order={payload.order_id} amount={payload.value} {currency} "
        f"id={payload.event_id} success={result.success}"
    )
    background_tasks.add_task(
        save_tracked_event, session_factory, EventName.PURCHASE.value, payload.event_id, purchase_data, result, "purchase"
    )
    return result.to_response()


@router.post(
    "/batch",
    summary="Track a batch of events",
    description="Tracks up to MAX_BATCH_SIZE events concurrently and returns per-event results.",
)
async def track_batch(
    payload: BatchPayload,
    background_tasks: BackgroundTasks,
    context: RequestContext = Depends(get_request_context),
    capi_service: MetaCAPIService = Depends(get_capi_service),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    events = payload.events
    if not events:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="events array is required")
    if len(events) > settings.MAX_BATCH_SIZE:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Maximum {settings.MAX_BATCH_SIZE} events per batch",
        )
    _ensure_configured(capi_service)

    async def track_one(raw: Dict[str, Any]) -> TrackResult:
        try:
            item = TrackEventPayload.model_validate(raw)
        except ValidationError as e:
            return TrackResult(success=False, error=f"Malformed event: {e.error_count()} validation error(s)")
        error = _validation_error(item.event_name, item.event_id)
        if error:
            return TrackResult(success=False, error=error)
        event_data = item.event_data or {}
        result = await capi_service.track_event(item.event_name, event_data, item.event_id, context)
        background_tasks.add_task(
            save_tracked_event, session_factory, item.event_name, item.event_id, event_data, result, "batch"
        )
        return result

    results = await asyncio.gather(*(track_one(raw) for raw in events))
    successful = sum(1 for r in results if r.success)

    logger.info(f"Batch events tracked: total={len(events)} successful={successful} failed={len(events) - successful}")
    return {
        "success": True,
        "total": len(events),
        "successful": successful,
        "failed": len(events) - successful,
        "results": [r.to_response() for r in results],
    }


@router.get("/status", summary="Tracking service status")
async def get_tracking_status(capi_service: MetaCAPIService = Depends(get_capi_service)):
    return {
        "success": True,
        "tracking": {
            "pixelConfigured": bool(capi_service.pixel_id),
            "capiConfigured": bool(capi_service.access_token),
            "queuedEvents": len(capi_service.retry_queue),
            "dedupCacheSize": len(capi_service.deduplicator),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    }


@router.post(
    "/retry-queue",
    summary="Retry queued events",
    description="Re-delivers events that failed after all retries. Admin only.",
    dependencies=[Depends(verify_admin_api_key)],
)
async def retry_queued_events(capi_service: MetaCAPIService = Depends(get_capi_service)):
    before = len(capi_service.retry_queue)
    drained = await capi_service.retry_queued_events()
    logger.info(f"Queue retry completed: before={before} processed={drained.processed} remaining={drained.remaining}")
    return {"success": True, "processed": drained.processed, "remaining": drained.remaining}
