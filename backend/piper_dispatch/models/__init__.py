"""
SQLAlchemy models for PostgreSQL persistence.
"""

from piper_dispatch.models.campaign import (
    Campaign,
    CampaignRecipient,
    CampaignStatus,
    RecipientStatus,
    SubscriptionStatus,
)
from piper_dispatch.models.tracking import (
    ComplaintType,
    DeviceType,
    EmailClick,
    EmailOpen,
    EmailUnsubscribe,
    SpamComplaint,
)

__all__ = [
    "Campaign",
    "CampaignRecipient",
    "CampaignStatus",
    "RecipientStatus",
    "SubscriptionStatus",
    "ComplaintType",
    "DeviceType",
    "EmailClick",
    "EmailOpen",
    "EmailUnsubscribe",
    "SpamComplaint",
]
