# backend/tracking/models/beacons.py
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional


class LinkType(str, Enum):
    WHATSAPP = "whatsapp"
    EMAIL = "email"
    PHONE = "phone"
    INQUIRY_FORM = "inquiry_form"
    OTHER = "other"


class PageViewPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='ignore', coerce_numbers_to_str=True)

    visitor_id: Optional[str] = Field(None, alias="visitorId")
    session_id: Optional[str] = Field(None, alias="sessionId")
    page: Optional[str] = None
    referrer: Optional[str] = None
    user_id: Optional[str] = Field(None, alias="userId")


class ClickSource(BaseModel):
    page: Optional[str] = None
    referrer: Optional[str] = None


class LinkClickPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='ignore', coerce_numbers_to_str=True)

    link_type: Optional[str] = Field(None, alias="linkType")
    product_id: Optional[str] = Field(None, alias="productId")
    product_name: Optional[str] = Field(None, alias="productName")
    destination: Optional[str] = None
    source: Optional[ClickSource] = None
    user_id: Optional[str] = Field(None, alias="userId")
