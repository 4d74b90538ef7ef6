# backend/tracking/models/events.py
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Optional


class EventName(str, Enum):
    """Standard Meta events reported by the storefront."""
    PAGE_VIEW = "PageView"
    VIEW_CONTENT = "ViewContent"
    ADD_TO_CART = "AddToCart"
    INITIATE_CHECKOUT = "InitiateCheckout"
    PURCHASE = "Purchase"
    LEAD = "Lead"


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='ignore', coerce_numbers_to_str=True)


# Required fields are Optional on purpose: missing values are answered with 400, not 422.
class TrackEventPayload(_CamelModel):
    event_name: Optional[str] = Field(None, alias="eventName")
    event_data: Optional[Dict[str, Any]] = Field(None, alias="eventData")
    event_id: Optional[str] = Field(None, alias="eventId")
    timestamp: Optional[str] = None  # occurrence time, logged only


class PurchaseItem(_CamelModel):
    id: Optional[str] = None
    title: Optional[str] = None
    price: Optional[float] = None
    quantity: Optional[int] = None


class PurchasePayload(_CamelModel):
    order_id: Optional[str] = Field(None, alias="orderId")
    items: Optional[List[PurchaseItem]] = None
    value: Optional[float] = None
    currency: Optional[str] = None
    event_id: Optional[str] = Field(None, alias="eventId")
    email: Optional[str] = None
    user_id: Optional[str] = Field(None, alias="userId")


class BatchPayload(_CamelModel):
    events: Optional[List[Dict[str, Any]]] = None


class TrackResult(BaseModel):
    """Structured outcome of a delivery attempt; never raised, always returned."""
    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    duplicate: bool = Field(False, exclude=True)

    def to_response(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class DrainResult(BaseModel):
    processed: int
    failed: int
    remaining: int
