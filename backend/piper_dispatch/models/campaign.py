"""
Campaign and recipient models for newsletter delivery.
"""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from piper_dispatch.db.postgres import Base
from piper_dispatch.utils.dates import utcnow


class CampaignStatus(str, Enum):
    """Campaign lifecycle states."""
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    SENT = "sent"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    FAILED = "failed"


class RecipientStatus(str, Enum):
    """Per-recipient delivery state."""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    BOUNCED = "bounced"


class SubscriptionStatus(str, Enum):
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBED = "unsubscribed"


_CAMPAIGN_DEFAULTS = {
    "status": CampaignStatus.DRAFT.value,
    "progress": 0,
    "total_recipients": 0,
    "sent_count": 0,
    "failed_count": 0,
    "delivered_count": 0,
    "bounced_count": 0,
    "opened_count": 0,
    "unique_opened_count": 0,
    "clicked_count": 0,
    "unique_clicked_count": 0,
    "unsubscribed_count": 0,
    "unique_unsubscribed_count": 0,
    "spam_complaint_count": 0,
    "unique_spam_complaint_count": 0,
    "open_rate": 0.0,
    "click_rate": 0.0,
    "click_through_rate": 0.0,
    "is_deleted": False,
}


class Campaign(Base):
    """A single newsletter broadcast to an ordered recipient list."""

    __tablename__ = "campaigns"
    __table_args__ = (
        Index("idx_campaigns_status_scheduled_at", "status", "scheduled_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(200), nullable=False)

    # Content
    subject = Column(String(300), nullable=False)
    content = Column(Text, nullable=False)
    from_name = Column(String(255), nullable=True)
    from_address = Column(String(255), nullable=True)
    reply_to = Column(String(255), nullable=True)

    # Lifecycle
    status = Column(String(50), default=CampaignStatus.DRAFT.value, nullable=False, index=True)
    scheduled_at = Column(DateTime, nullable=True)
    progress = Column(Integer, default=0)

    # Delivery statistics (written by the delivery engine)
    total_recipients = Column(Integer, default=0)
    sent_count = Column(Integer, default=0)
    failed_count = Column(Integer, default=0)
    delivered_count = Column(Integer, default=0)
    bounced_count = Column(Integer, default=0)

    # Engagement statistics (written by the stats aggregator)
    opened_count = Column(Integer, default=0)
    unique_opened_count = Column(Integer, default=0)
    clicked_count = Column(Integer, default=0)
    unique_clicked_count = Column(Integer, default=0)
    unsubscribed_count = Column(Integer, default=0)
    unique_unsubscribed_count = Column(Integer, default=0)
    spam_complaint_count = Column(Integer, default=0)
    unique_spam_complaint_count = Column(Integer, default=0)
    open_rate = Column(Float, default=0.0)
    click_rate = Column(Float, default=0.0)
    click_through_rate = Column(Float, default=0.0)
    stats_refreshed_at = Column(DateTime, nullable=True)

    # Run bookkeeping
    sending_started_at = Column(DateTime, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    send_duration_ms = Column(Integer, nullable=True)
    last_error = Column(Text, nullable=True)

    # Soft delete
    is_deleted = Column(Boolean, default=False, nullable=False, index=True)
    deleted_at = Column(DateTime, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    recipients = relationship(
        "CampaignRecipient",
        back_populates="campaign",
        order_by="CampaignRecipient.position",
        cascade="all, delete-orphan",
        lazy="raise",
    )

    def __init__(self, **kwargs):
        for key, value in _CAMPAIGN_DEFAULTS.items():
            kwargs.setdefault(key, value)
        kwargs.setdefault("id", uuid4())
        now = utcnow()
        kwargs.setdefault("created_at", now)
        kwargs.setdefault("updated_at", now)
        super().__init__(**kwargs)


class CampaignRecipient(Base):
    """One addressee of a campaign with its delivery and engagement state."""

    __tablename__ = "campaign_recipients"
    __table_args__ = (
        Index("idx_campaign_recipients_campaign_position", "campaign_id", "position"),
        Index("idx_campaign_recipients_campaign_subscriber", "campaign_id", "subscriber_id"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    campaign_id = Column(UUID(as_uuid=True), ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False)
    position = Column(Integer, nullable=False)

    subscriber_id = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False)
    first_name = Column(String(255), nullable=True)
    last_name = Column(String(255), nullable=True)

    # Delivery
    status = Column(String(50), default=RecipientStatus.PENDING.value, nullable=False)
    message_id = Column(String(255), nullable=True, index=True)
    error = Column(Text, nullable=True)
    bounce_reason = Column(Text, nullable=True)

    # Subscription
    subscription_status = Column(String(50), default=SubscriptionStatus.SUBSCRIBED.value, nullable=False)
    unsubscribed_at = Column(DateTime, nullable=True)

    # First-occurrence engagement timestamps
    sent_at = Column(DateTime, nullable=True)
    opened_at = Column(DateTime, nullable=True)
    clicked_at = Column(DateTime, nullable=True)

    campaign = relationship("Campaign", back_populates="recipients")

    def __init__(self, **kwargs):
        kwargs.setdefault("id", uuid4())
        kwargs.setdefault("status", RecipientStatus.PENDING.value)
        kwargs.setdefault("subscription_status", SubscriptionStatus.SUBSCRIBED.value)
        super().__init__(**kwargs)
