"""
Soft-deletes sent campaigns past the retention window.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from piper_dispatch.core.config import settings
from piper_dispatch.repositories.campaigns import campaign_repository
from piper_dispatch.repositories.protocols import CampaignRepositoryProtocol
from piper_dispatch.utils.dates import to_naive_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass
class RetentionSweepResult:
    deleted: int = 0
    errors: int = 0


class RetentionSweeper:
    def __init__(
        self,
        campaigns: Optional[CampaignRepositoryProtocol] = None,
        retention_days: Optional[int] = None,
    ):
        self.campaigns = campaigns or campaign_repository
        self.retention_days = retention_days if retention_days is not None else settings.retention_days

    async def sweep(self, now: Optional[datetime] = None) -> RetentionSweepResult:
        now = to_naive_utc(now) if now else utcnow()
        cutoff = now - timedelta(days=self.retention_days)
        result = RetentionSweepResult()

        expired = await self.campaigns.list_expired_campaigns(cutoff)
        for campaign in expired:
            try:
                await self.campaigns.update_campaign(campaign.id, is_deleted=True, deleted_at=now)
                result.deleted += 1
            except Exception as e:
                logger.error("Could not soft-delete campaign %s: %s", campaign.id, e, exc_info=True)
                result.errors += 1

        logger.info(
            "Retention sweep: %d campaign(s) older than %s soft-deleted, %d errors",
            result.deleted, cutoff.isoformat(), result.errors,
        )
        return result


# Singleton instance
retention_sweeper = RetentionSweeper()
