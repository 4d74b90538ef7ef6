# backend/tracking/api/v1/router.py
from fastapi import APIRouter
from tracking.api.v1.endpoints import events, analytics, link_clicks, admin_analytics

api_router_v1 = APIRouter()

api_router_v1.include_router(events.router, prefix="/events", tags=["Events"])
api_router_v1.include_router(analytics.router, prefix="/analytics", tags=["Analytics"])
api_router_v1.include_router(link_clicks.router, prefix="/link-clicks", tags=["Link Clicks"])
api_router_v1.include_router(admin_analytics.router)
