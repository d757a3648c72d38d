"""
Periodic driver for due campaigns.

Each tick hands every due campaign to the delivery engine, one after the
other. Ticks never overlap: a tick that starts while another is still
running returns immediately without doing anything.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from piper_dispatch.core.exceptions import InvalidStateError, PipelineError
from piper_dispatch.models.campaign import CampaignStatus
from piper_dispatch.repositories.campaigns import campaign_repository
from piper_dispatch.repositories.protocols import CampaignRepositoryProtocol
from piper_dispatch.services.delivery_engine import BatchDeliveryEngine, CampaignSendResult, build_delivery_engine
from piper_dispatch.utils.dates import to_naive_utc, utcnow

logger = logging.getLogger(__name__)


class SingleFlightGuard:
    """Non-blocking mutual exclusion flag.

    Backed by a thread lock so it holds across event loops created by
    successive ``asyncio.run`` calls in the same worker process.
    """

    def __init__(self):
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        return self._lock.acquire(blocking=False)

    def release(self) -> None:
        self._lock.release()

    @property
    def held(self) -> bool:
        return self._lock.locked()


@dataclass
class SchedulerTickResult:
    skipped: bool = False
    processed: int = 0
    failed: int = 0
    results: list[CampaignSendResult] = field(default_factory=list)


class DeliveryScheduler:
    def __init__(
        self,
        campaigns: Optional[CampaignRepositoryProtocol] = None,
        engine: Optional[BatchDeliveryEngine] = None,
        guard: Optional[SingleFlightGuard] = None,
    ):
        self.campaigns = campaigns or campaign_repository
        self._engine = engine
        self.guard = guard or SingleFlightGuard()
        self.current_campaign_id: Optional[str] = None

    @property
    def engine(self) -> BatchDeliveryEngine:
        if self._engine is None:
            self._engine = build_delivery_engine()
        return self._engine

    async def tick(self, now: Optional[datetime] = None) -> SchedulerTickResult:
        """Process every campaign that is due at ``now``."""
        if not self.guard.try_acquire():
            logger.warning("Scheduler tick skipped: previous tick still running")
            return SchedulerTickResult(skipped=True)

        try:
            return await self._process_due(to_naive_utc(now) if now else utcnow())
        finally:
            self.guard.release()

    async def _process_due(self, now: datetime) -> SchedulerTickResult:
        result = SchedulerTickResult()
        due = await self.campaigns.list_due_campaigns(now)
        logger.info("Scheduler tick: %d due campaign(s)", len(due))

        for campaign in due:
            self.current_campaign_id = str(campaign.id)
            try:
                send_result = await self.engine.send_campaign(campaign)
            except InvalidStateError as e:
                logger.info("Campaign %s no longer sendable, skipping: %s", campaign.id, e)
                continue
            except PipelineError as e:
                # The engine has already marked the campaign failed
                logger.error("Campaign %s failed during delivery: %s", campaign.id, e)
                result.failed += 1
                continue
            except Exception as e:
                logger.error("Campaign %s failed: %s", campaign.id, e, exc_info=True)
                await self._mark_failed(campaign.id, str(e))
                result.failed += 1
                continue
            finally:
                self.current_campaign_id = None

            result.processed += 1
            result.results.append(send_result)

        return result

    def queue_status(self) -> dict:
        """Whether this process is currently running a tick, and on which campaign."""
        return {
            "is_processing": self.guard.held,
            "current_campaign_id": self.current_campaign_id,
            "timestamp": utcnow().isoformat(),
        }

    async def _mark_failed(self, campaign_id, error: str) -> None:
        try:
            await self.campaigns.update_campaign(
                campaign_id,
                status=CampaignStatus.FAILED.value,
                last_error=error,
            )
        except Exception:
            logger.exception("Could not mark campaign %s as failed", campaign_id)


# Singleton instance
delivery_scheduler = DeliveryScheduler()
