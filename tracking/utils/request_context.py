# backend/tracking/utils/request_context.py
import logging
from dataclasses import dataclass
from typing import Optional
from fastapi import Request

logger = logging.getLogger(__name__)

FBP_COOKIE = "_fbp"
UNKNOWN_IP = "0.0.0.0"


@dataclass(frozen=True)
class RequestContext:
    """
    Snapshot of the parts of an HTTP request used to enrich tracking events.

    Queued events keep this snapshot instead of the live request, so a retry
    that runs minutes later still reports the original visitor.
    """
    user_agent: Optional[str] = None
    forwarded_for: Optional[str] = None
    referer: Optional[str] = None
    client_host: Optional[str] = None
    fbp: Optional[str] = None

    @classmethod
    def from_request(cls, request: Request) -> "RequestContext":
        headers = request.headers
        return cls(
            user_agent=headers.get("user-agent"),
            forwarded_for=headers.get("x-forwarded-for"),
            referer=headers.get("referer"),
            client_host=request.client.host if request.client else None,
            fbp=request.cookies.get(FBP_COOKIE),
        )

    @property
    def client_ip(self) -> str:
        """First X-Forwarded-For hop, then the socket address, then a sentinel."""
        if self.forwarded_for:
            first_hop = self.forwarded_for.split(',')[0].strip()
            if first_hop:
                return first_hop
        return self.client_host or UNKNOWN_IP
