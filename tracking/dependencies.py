# backend/tracking/dependencies.py
import logging
import hmac
from fastapi import Request, HTTPException, status, Security
from fastapi.security import APIKeyHeader

from tracking.core.config import settings
from tracking.services.meta_capi import MetaCAPIService
from tracking.utils.request_context import RequestContext

logger = logging.getLogger(__name__)

api_key_header_admin = APIKeyHeader(name="X-Admin-API-Key", auto_error=False)

async def verify_admin_api_key(api_key: str = Security(api_key_header_admin)):
    """
    Operator access for admin endpoints: compares X-Admin-API-Key with the configured key.
    """
    if not settings.ADMIN_API_KEY:
        logger.critical("Admin API Key is not configured on the server!")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin functions are temporarily unavailable."
        )
    if not api_key or not hmac.compare_digest(api_key, settings.ADMIN_API_KEY):
        logger.warning("Invalid or missing Admin API Key received.")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required."
        )
    return True

async def get_capi_service(request: Request) -> MetaCAPIService:
    service = getattr(request.app.state, 'capi_service', None)
    if not service or not isinstance(service, MetaCAPIService):
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Conversion tracking service is unavailable."
        )
    return service

async def get_request_context(request: Request) -> RequestContext:
    return RequestContext.from_request(request)
