# backend/tracking/services/enrichment.py
import hashlib
import logging
import re
import time
from typing import Any, Dict, List, Optional

from tracking.utils.request_context import RequestContext

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "USD"
FBC_VERSION_PREFIX = "fb.1"
_NON_DIGITS = re.compile(r"\D")


def hash_value(value: str) -> str:
    """SHA-256 hex digest, the only form Meta accepts for customer identifiers."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def build_user_data(event_data: Dict[str, Any], context: Optional[RequestContext] = None) -> Dict[str, Any]:
    """
    Builds the `user_data` block of a Conversions API event.

    Identifiers are normalised before hashing (email lowercased and trimmed,
    phone reduced to digits). A field whose source is absent or normalises to
    an empty string is left out: Meta rejects malformed hashes.
    """
    user_data: Dict[str, Any] = {}

    user_id = event_data.get("userId")
    if user_id is not None and str(user_id).strip():
        user_data["external_id"] = hash_value(str(user_id).strip())

    email = event_data.get("email")
    if email:
        normalized_email = str(email).lower().strip()
        if normalized_email:
            user_data["em"] = hash_value(normalized_email)

    phone = event_data.get("phone")
    if phone:
        normalized_phone = _NON_DIGITS.sub("", str(phone))
        if normalized_phone:
            user_data["ph"] = hash_value(normalized_phone)

    if context is not None:
        if context.user_agent:
            user_data["ua"] = context.user_agent
        user_data["client_ip_address"] = context.client_ip

    fbclid = event_data.get("fbclid")
    if fbclid:
        user_data["fbc"] = f"{FBC_VERSION_PREFIX}.{int(time.time() * 1000)}.{fbclid}"

    fbp = event_data.get("fbp")
    if fbp:
        user_data["fbp"] = fbp

    return user_data


def _format_amount(raw: Any) -> Optional[str]:
    try:
        return f"{float(raw):.2f}"
    except (TypeError, ValueError):
        logger.warning(f"Ignoring non-numeric amount in event data: {raw!r}")
        return None


def _item_id(item: Dict[str, Any]) -> Optional[str]:
    item_id = item.get("product_id", item.get("id"))
    return str(item_id) if item_id is not None else None


def build_custom_data(event_data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Maps storefront event data onto Meta's `custom_data` block.

    The rules are driven by which keys are present, so one mapper serves all
    event kinds. For multi-item payloads `num_items` is the number of distinct
    line items, not the sum of their quantities.
    """
    custom_data: Dict[str, Any] = {}

    amount = None
    if event_data.get("total_value") is not None:
        amount = _format_amount(event_data["total_value"])
    elif event_data.get("price") is not None:
        amount = _format_amount(event_data["price"])
    if amount is not None:
        custom_data["value"] = amount
        custom_data["currency"] = event_data.get("currency") or DEFAULT_CURRENCY

    if event_data.get("product_id") is not None:
        custom_data["content_ids"] = [str(event_data["product_id"])]
        custom_data["content_name"] = event_data.get("product_name") or "Product"
        custom_data["content_type"] = "product"

    raw_items = event_data.get("items")
    items: List[Dict[str, Any]] = (
        [i for i in raw_items if isinstance(i, dict)] if isinstance(raw_items, list) else []
    )
    if items:
        custom_data["content_ids"] = [item_id for item_id in map(_item_id, items) if item_id is not None]
        custom_data["num_items"] = len(items)
        custom_data["content_type"] = "product_group"
    elif event_data.get("quantity"):
        custom_data["num_items"] = event_data["quantity"]

    if event_data.get("order_id") is not None:
        custom_data["order_id"] = str(event_data["order_id"])

    return custom_data


def build_event(
    event_name: str,
    event_id: str,
    event_data: Dict[str, Any],
    context: Optional[RequestContext] = None,
) -> Dict[str, Any]:
    """Composes one server event. `event_time` is the send time in whole seconds."""
    return {
        "event_name": event_name,
        "event_id": event_id,
        "event_time": int(time.time()),
        "event_source_url": (context.referer if context else None) or "backend-api",
        "user_data": build_user_data(event_data, context),
        "custom_data": build_custom_data(event_data),
        "opt_out": False,
    }
