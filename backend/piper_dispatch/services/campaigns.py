"""
Campaign management service.

Handles campaign creation, recipient lists and operator lifecycle actions
(schedule, unschedule, pause, cancel). Sending itself belongs to the
delivery engine.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable, Optional

from piper_dispatch.core.exceptions import CampaignNotFoundError, InvalidStateError
from piper_dispatch.models.campaign import Campaign, CampaignRecipient, CampaignStatus
from piper_dispatch.repositories.campaigns import campaign_repository
from piper_dispatch.repositories.protocols import CampaignId, CampaignRepositoryProtocol
from piper_dispatch.services.campaign_state import ensure_transition
from piper_dispatch.utils.dates import to_naive_utc, utcnow

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = frozenset({
    "name", "subject", "content", "from_name", "from_address", "reply_to",
})

MAX_PAGE_SIZE = 100

# Statuses in which the recipient list may still grow
EDITABLE_STATUSES = frozenset({
    CampaignStatus.DRAFT.value,
    CampaignStatus.SCHEDULED.value,
    CampaignStatus.PAUSED.value,
})


class CampaignService:
    """Service for managing newsletter campaigns."""

    def __init__(self, campaigns: Optional[CampaignRepositoryProtocol] = None):
        self.campaigns = campaigns or campaign_repository

    async def create_campaign(
        self,
        name: str,
        subject: str,
        content: str,
        from_name: Optional[str] = None,
        from_address: Optional[str] = None,
        reply_to: Optional[str] = None,
    ) -> Campaign:
        """Create a new draft campaign."""
        campaign = Campaign(
            name=name,
            subject=subject,
            content=content,
            from_name=from_name,
            from_address=from_address,
            reply_to=reply_to,
        )
        campaign = await self.campaigns.create_campaign(campaign)
        logger.info("Campaign %s created", campaign.id)
        return campaign

    async def get_campaign(self, campaign_id: CampaignId) -> Campaign:
        campaign = await self.campaigns.get_campaign(campaign_id)
        if campaign is None or campaign.is_deleted:
            raise CampaignNotFoundError(campaign_id)
        return campaign

    async def list_campaigns(
        self,
        status: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[Campaign], int]:
        """One page of non-deleted campaigns, newest first, and the total count."""
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_PAGE_SIZE)
        return await self.campaigns.list_campaigns(
            status=status, search=search or None, offset=(page - 1) * limit, limit=limit
        )

    async def update_campaign(self, campaign_id: CampaignId, **fields: Any) -> Campaign:
        """Edit content and sender details of a draft campaign.

        ``None`` values are ignored; unknown fields raise ``ValueError``.
        """
        unknown = set(fields) - EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields cannot be edited: {', '.join(sorted(unknown))}")
        values = {key: value for key, value in fields.items() if value is not None}
        return await self._change_draft(campaign_id, "updated", **values)

    async def delete_campaign(self, campaign_id: CampaignId) -> None:
        """Soft delete a draft campaign."""
        await self._change_draft(campaign_id, "deleted", is_deleted=True, deleted_at=utcnow())

    async def _change_draft(self, campaign_id: CampaignId, action: str, **values: Any) -> Campaign:
        campaign = await self.get_campaign(campaign_id)
        draft = CampaignStatus.DRAFT.value
        if campaign.status != draft:
            raise InvalidStateError(campaign.status, action, campaign.id)

        if not await self.campaigns.transition_status(campaign.id, draft, draft, **values):
            latest = await self.campaigns.get_campaign(campaign.id)
            raise InvalidStateError(latest.status if latest else campaign.status, action, campaign.id)

        logger.info("Campaign %s %s", campaign.id, action)
        return await self.campaigns.get_campaign(campaign.id)

    async def add_recipients(
        self, campaign_id: CampaignId, recipients: Iterable[dict[str, Any]]
    ) -> int:
        """Append recipients in the given order. Returns the campaign's recipient total."""
        campaign = await self.get_campaign(campaign_id)
        if campaign.status not in EDITABLE_STATUSES:
            raise InvalidStateError(campaign.status, "recipients updated", campaign.id)

        rows = [
            CampaignRecipient(
                subscriber_id=str(r["subscriber_id"]),
                email=r["email"],
                first_name=r.get("first_name"),
                last_name=r.get("last_name"),
            )
            for r in recipients
        ]
        total = await self.campaigns.add_recipients(campaign.id, rows)
        logger.info("Campaign %s: %d recipient(s) added, %d total", campaign.id, len(rows), total)
        return total

    async def remove_recipients(
        self, campaign_id: CampaignId, subscriber_ids: Iterable[str]
    ) -> tuple[int, int]:
        """Drop subscribers from a draft campaign. Returns (removed, remaining total)."""
        campaign = await self.get_campaign(campaign_id)
        if campaign.status != CampaignStatus.DRAFT.value:
            raise InvalidStateError(campaign.status, "recipients removed", campaign.id)

        removed, total = await self.campaigns.remove_recipients(campaign.id, list(subscriber_ids))
        logger.info("Campaign %s: %d recipient(s) removed, %d left", campaign.id, removed, total)
        return removed, total

    async def list_recipients(
        self, campaign_id: CampaignId, status: Optional[str] = None
    ) -> list[CampaignRecipient]:
        campaign = await self.get_campaign(campaign_id)
        return await self.campaigns.list_recipients(campaign.id, status=status)

    async def transition(
        self,
        campaign_id: CampaignId,
        target: CampaignStatus,
        **values: Any,
    ) -> Campaign:
        """Apply an operator transition, failing if the campaign moved concurrently."""
        campaign = await self.get_campaign(campaign_id)
        current = campaign.status
        ensure_transition(current, target, campaign.id)

        moved = await self.campaigns.transition_status(campaign.id, current, target.value, **values)
        if not moved:
            latest = await self.get_campaign(campaign.id)
            raise InvalidStateError(latest.status, target.value, campaign.id)

        logger.info("Campaign %s: %s -> %s", campaign.id, current, target.value)
        return await self.get_campaign(campaign.id)

    async def schedule(
        self, campaign_id: CampaignId, scheduled_at: Optional[datetime] = None
    ) -> Campaign:
        """Schedule for ``scheduled_at`` (default: now). Also resumes a paused campaign."""
        when = to_naive_utc(scheduled_at) if scheduled_at else utcnow()
        return await self.transition(campaign_id, CampaignStatus.SCHEDULED, scheduled_at=when)

    async def unschedule(self, campaign_id: CampaignId) -> Campaign:
        return await self.transition(campaign_id, CampaignStatus.DRAFT, scheduled_at=None)

    async def pause(self, campaign_id: CampaignId) -> Campaign:
        """Request a pause; the running send stops before its next batch."""
        return await self.transition(campaign_id, CampaignStatus.PAUSED)

    async def cancel(self, campaign_id: CampaignId) -> Campaign:
        return await self.transition(campaign_id, CampaignStatus.CANCELLED)

    async def get_progress(self, campaign_id: CampaignId) -> dict[str, Any]:
        campaign = await self.get_campaign(campaign_id)
        return {
            "campaign_id": str(campaign.id),
            "status": campaign.status,
            "progress": campaign.progress or 0,
            "total_recipients": campaign.total_recipients or 0,
            "sent_count": campaign.sent_count or 0,
            "failed_count": campaign.failed_count or 0,
        }


# Singleton instance
campaign_service = CampaignService()
