"""
Repository protocols for the campaign and tracking stores.

Services depend on these interfaces so the delivery pipeline can be driven
against PostgreSQL in production and in-memory stores in tests.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Protocol, Sequence, Union
from uuid import UUID

from piper_dispatch.models.campaign import Campaign, CampaignRecipient
from piper_dispatch.models.tracking import EmailClick, EmailOpen, EmailUnsubscribe, SpamComplaint

CampaignId = Union[str, UUID]
TrackingEvent = Union[EmailOpen, EmailClick, EmailUnsubscribe, SpamComplaint]


@dataclass
class DeliveryOutcome:
    """Result of one delivery attempt, persisted after its batch settles."""
    recipient_id: UUID
    status: str
    message_id: Optional[str] = None
    sent_at: Optional[datetime] = None
    error: Optional[str] = None


@dataclass
class EngagementCounts:
    """Total and distinct-recipient event counts for one campaign."""
    opens: int = 0
    unique_opens: int = 0
    clicks: int = 0
    unique_clicks: int = 0
    unsubscribes: int = 0
    unique_unsubscribes: int = 0
    spam_complaints: int = 0
    unique_spam_complaints: int = 0


class CampaignRepositoryProtocol(Protocol):
    """Protocol for the campaign store."""

    async def create_campaign(self, campaign: Campaign) -> Campaign:
        ...

    async def get_campaign(self, campaign_id: CampaignId) -> Optional[Campaign]:
        ...

    async def update_campaign(self, campaign_id: CampaignId, **values: Any) -> None:
        """Unconditionally write the given column values."""
        ...

    async def transition_status(
        self,
        campaign_id: CampaignId,
        expected: str,
        target: str,
        **values: Any,
    ) -> bool:
        """Move status from ``expected`` to ``target`` only if it is still ``expected``."""
        ...

    async def add_recipients(
        self, campaign_id: CampaignId, recipients: Sequence[CampaignRecipient]
    ) -> int:
        """Append recipients after the current last position. Returns the new total."""
        ...

    async def list_campaigns(
        self,
        status: Optional[str] = None,
        search: Optional[str] = None,
        offset: int = 0,
        limit: int = 10,
    ) -> tuple[list[Campaign], int]:
        """Non-deleted campaigns, newest first, with the unpaged total."""
        ...

    async def remove_recipients(
        self, campaign_id: CampaignId, subscriber_ids: Sequence[str]
    ) -> tuple[int, int]:
        """Delete the named subscribers. Returns (removed, new total)."""
        ...

    async def list_recipients(
        self, campaign_id: CampaignId, status: Optional[str] = None
    ) -> list[CampaignRecipient]:
        """Recipients in send order, optionally filtered by delivery status."""
        ...

    async def record_delivery_outcomes(self, outcomes: Sequence[DeliveryOutcome]) -> None:
        ...

    async def list_due_campaigns(self, now: datetime) -> list[Campaign]:
        ...

    async def list_stale_stats_campaigns(self, refreshed_before: datetime) -> list[Campaign]:
        ...

    async def list_expired_campaigns(self, sent_before: datetime) -> list[Campaign]:
        ...

    async def count_bounced_recipients(self, campaign_id: CampaignId) -> int:
        ...

    async def stamp_recipient_engagement(
        self, campaign_id: str, subscriber_id: str, field: str, at: datetime
    ) -> bool:
        """Set ``opened_at``/``clicked_at`` if not yet set."""
        ...

    async def mark_recipient_unsubscribed(
        self, campaign_id: str, subscriber_id: str, at: datetime
    ) -> bool:
        ...

    async def mark_recipient_bounced(self, message_id: str, reason: Optional[str]) -> bool:
        ...


class TrackingRepositoryProtocol(Protocol):
    """Protocol for the append-only tracking event store."""

    async def get_open(self, message_id: str, recipient_id: str) -> Optional[EmailOpen]:
        ...

    async def insert_open(self, event: EmailOpen) -> EmailOpen:
        """Insert an open; on a duplicate (message, recipient) return the stored one."""
        ...

    async def add_event(self, event: TrackingEvent) -> TrackingEvent:
        ...

    async def engagement_counts(self, campaign_id: str) -> EngagementCounts:
        ...
