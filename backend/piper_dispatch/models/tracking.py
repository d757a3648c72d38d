"""
Append-only engagement event records.

Identifiers are stored as plain strings because they arrive from
client-presented tracking tokens and are not trusted to reference
existing rows.
"""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Index, String, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID

from piper_dispatch.db.postgres import Base
from piper_dispatch.utils.dates import utcnow


class DeviceType(str, Enum):
    DESKTOP = "desktop"
    MOBILE = "mobile"
    TABLET = "tablet"
    OTHER = "other"


class ComplaintType(str, Enum):
    SPAM = "spam"
    ABUSE = "abuse"
    OTHER = "other"


class _TrackingEventMixin:
    """Columns shared by every engagement event."""

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    message_id = Column(String(255), nullable=False, index=True)
    recipient_id = Column(String(255), nullable=False, index=True)
    campaign_id = Column(String(255), nullable=False, index=True)
    ip_address = Column(String(64), nullable=True)

    def __init__(self, **kwargs):
        kwargs.setdefault("id", uuid4())
        super().__init__(**kwargs)


class EmailOpen(_TrackingEventMixin, Base):
    """First open of a delivered message. At most one per (message, recipient)."""

    __tablename__ = "email_opens"
    __table_args__ = (
        UniqueConstraint("message_id", "recipient_id", name="uq_email_opens_message_recipient"),
        Index("idx_email_opens_campaign_recipient", "campaign_id", "recipient_id"),
    )

    user_agent = Column(Text, nullable=True)
    device_type = Column(String(20), default=DeviceType.OTHER.value)
    opened_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    def __init__(self, **kwargs):
        kwargs.setdefault("opened_at", utcnow())
        super().__init__(**kwargs)


class EmailClick(_TrackingEventMixin, Base):
    """A followed link. Every click is stored."""

    __tablename__ = "email_clicks"
    __table_args__ = (
        Index("idx_email_clicks_campaign_recipient", "campaign_id", "recipient_id"),
    )

    link_url = Column(Text, nullable=False)
    link_id = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    device_type = Column(String(20), default=DeviceType.OTHER.value)
    utm_source = Column(String(255), nullable=True)
    utm_medium = Column(String(255), nullable=True)
    utm_campaign = Column(String(255), nullable=True)
    clicked_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    def __init__(self, **kwargs):
        kwargs.setdefault("clicked_at", utcnow())
        super().__init__(**kwargs)


class EmailUnsubscribe(_TrackingEventMixin, Base):
    __tablename__ = "email_unsubscribes"
    __table_args__ = (
        Index("idx_email_unsubscribes_campaign_recipient", "campaign_id", "recipient_id"),
    )

    reason = Column(Text, nullable=True)
    unsubscribed_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    def __init__(self, **kwargs):
        kwargs.setdefault("unsubscribed_at", utcnow())
        super().__init__(**kwargs)


class SpamComplaint(_TrackingEventMixin, Base):
    __tablename__ = "spam_complaints"
    __table_args__ = (
        Index("idx_spam_complaints_campaign_recipient", "campaign_id", "recipient_id"),
    )

    complaint_type = Column(String(20), default=ComplaintType.SPAM.value, nullable=False)
    feedback = Column(Text, nullable=True)
    complained_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    def __init__(self, **kwargs):
        kwargs.setdefault("complaint_type", ComplaintType.SPAM.value)
        kwargs.setdefault("complained_at", utcnow())
        super().__init__(**kwargs)
