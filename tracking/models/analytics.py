# backend/tracking/models/analytics.py
from datetime import datetime, timezone
from sqlalchemy import Boolean, Column, Integer, String, DateTime, JSON, Index
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PageView(Base):
    __tablename__ = "page_views"

    id = Column(Integer, primary_key=True, index=True)
    visitor_id = Column(String, nullable=False, index=True)  # persistent, from localStorage
    session_id = Column(String, nullable=False, index=True)  # per browser session
    page = Column(String, nullable=False)
    referrer = Column(String, nullable=False, default="")
    user_agent = Column(String, nullable=False, default="")
    device = Column(String, nullable=False, default="unknown")  # mobile | tablet | desktop | unknown
    browser = Column(String, nullable=False, default="")
    os = Column(String, nullable=False, default="")
    ip_address = Column(String, nullable=False, default="")
    user_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    __table_args__ = (
        Index("ix_page_views_visitor_created", "visitor_id", "created_at"),
        Index("ix_page_views_page_created", "page", "created_at"),
    )


class LinkClick(Base):
    __tablename__ = "link_clicks"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=True)  # anonymous clicks allowed
    link_type = Column(String, nullable=False, index=True)
    product_id = Column(String, nullable=True, index=True)
    product_name = Column(String, nullable=True)
    destination = Column(String, nullable=True)  # WhatsApp number, email, phone...
    source_page = Column(String, nullable=True)
    source_referrer = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    ip_address = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "linkType": self.link_type,
            "productId": self.product_id,
            "productName": self.product_name,
            "destination": self.destination,
            "source": {"page": self.source_page, "referrer": self.source_referrer},
            "userAgent": self.user_agent,
            "ipAddress": self.ip_address,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class TrackedEvent(Base):
    """Outcome log of conversion events relayed to Meta, kept for reporting."""
    __tablename__ = "tracked_events"

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String, nullable=False, index=True)
    event_name = Column(String, nullable=False, index=True)  # PageView, ViewContent, AddToCart...
    channel = Column(String, nullable=False, default="track")  # track | purchase | batch
    success = Column(Boolean, nullable=False, default=False)
    duplicate = Column(Boolean, nullable=False, default=False)
    error = Column(String, nullable=True)
    event_data = Column(JSON, nullable=True)  # PII keys stripped before insert
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
