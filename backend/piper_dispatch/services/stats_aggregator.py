"""
Folds tracking events back into campaign statistics.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from piper_dispatch.core.config import settings
from piper_dispatch.core.exceptions import CampaignNotFoundError
from piper_dispatch.models.campaign import Campaign
from piper_dispatch.repositories.campaigns import campaign_repository
from piper_dispatch.repositories.protocols import (
    CampaignId,
    CampaignRepositoryProtocol,
    EngagementCounts,
    TrackingRepositoryProtocol,
)
from piper_dispatch.repositories.tracking import tracking_repository
from piper_dispatch.utils.dates import to_naive_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass
class StatsRefreshResult:
    updated: int = 0
    errors: int = 0


def percentage(numerator: int, denominator: int) -> float:
    """``numerator / denominator`` as a percentage rounded to 2 places; 0.0 on an empty base."""
    if not denominator:
        return 0.0
    return round(numerator / denominator * 100, 2)


def compute_campaign_stats(sent: int, bounced: int, counts: EngagementCounts) -> dict[str, Any]:
    """Column values for a campaign's engagement statistics."""
    return {
        "opened_count": counts.opens,
        "unique_opened_count": counts.unique_opens,
        "clicked_count": counts.clicks,
        "unique_clicked_count": counts.unique_clicks,
        "unsubscribed_count": counts.unsubscribes,
        "unique_unsubscribed_count": counts.unique_unsubscribes,
        "spam_complaint_count": counts.spam_complaints,
        "unique_spam_complaint_count": counts.unique_spam_complaints,
        "bounced_count": bounced,
        "delivered_count": max(sent - bounced, 0),
        "open_rate": percentage(counts.unique_opens, sent),
        "click_rate": percentage(counts.unique_clicks, sent),
        "click_through_rate": percentage(counts.unique_clicks, counts.unique_opens),
    }


class StatsAggregator:
    def __init__(
        self,
        campaigns: Optional[CampaignRepositoryProtocol] = None,
        tracking: Optional[TrackingRepositoryProtocol] = None,
        refresh_interval_seconds: Optional[int] = None,
    ):
        self.campaigns = campaigns or campaign_repository
        self.tracking = tracking or tracking_repository
        self.refresh_interval_seconds = (
            refresh_interval_seconds
            if refresh_interval_seconds is not None
            else settings.stats_refresh_interval_seconds
        )

    async def refresh_stale_campaigns(self, now: Optional[datetime] = None) -> StatsRefreshResult:
        """Recompute stats for every sent campaign not refreshed within the interval."""
        now = to_naive_utc(now) if now else utcnow()
        cutoff = now - timedelta(seconds=self.refresh_interval_seconds)
        result = StatsRefreshResult()

        stale = await self.campaigns.list_stale_stats_campaigns(cutoff)
        for campaign in stale:
            try:
                await self._refresh(campaign, now)
                result.updated += 1
            except Exception as e:
                logger.error("Stats refresh failed for campaign %s: %s", campaign.id, e, exc_info=True)
                result.errors += 1

        logger.info("Stats refresh: %d updated, %d errors", result.updated, result.errors)
        return result

    async def refresh_campaign(self, campaign_id: CampaignId) -> dict[str, Any]:
        campaign = await self.campaigns.get_campaign(campaign_id)
        if campaign is None:
            raise CampaignNotFoundError(campaign_id)
        return await self._refresh(campaign, utcnow())

    async def _refresh(self, campaign: Campaign, now: datetime) -> dict[str, Any]:
        counts = await self.tracking.engagement_counts(str(campaign.id))
        bounced = await self.campaigns.count_bounced_recipients(campaign.id)
        values = compute_campaign_stats(campaign.sent_count or 0, bounced, counts)
        await self.campaigns.update_campaign(campaign.id, stats_refreshed_at=now, **values)
        return values


# Singleton instance
stats_aggregator = StatsAggregator()
