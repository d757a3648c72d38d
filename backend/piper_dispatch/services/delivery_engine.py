"""
Batch delivery engine.

Sends a scheduled campaign to its pending recipients in sequential batches.
Recipients inside a batch are delivered concurrently; a failure or timeout
for one recipient is recorded against that recipient and never affects its
siblings. Progress is persisted after every batch.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence
from uuid import uuid4

from piper_dispatch.core.config import settings
from piper_dispatch.core.exceptions import (
    InvalidStateError,
    PipelineError,
    RecipientDeliveryError,
)
from piper_dispatch.models.campaign import Campaign, CampaignRecipient, CampaignStatus, RecipientStatus
from piper_dispatch.repositories.campaigns import campaign_repository
from piper_dispatch.repositories.protocols import CampaignId, CampaignRepositoryProtocol, DeliveryOutcome
from piper_dispatch.services.campaign_state import ensure_transition
from piper_dispatch.services.email_provider import EmailMessage, EmailProvider, get_email_provider
from piper_dispatch.services.personalization import render_message
from piper_dispatch.services.rate_limiter import SendRateLimiter
from piper_dispatch.utils.dates import utcnow

logger = logging.getLogger(__name__)


@dataclass
class CampaignSendResult:
    campaign_id: str
    sent: int = 0
    failed: int = 0
    batches: int = 0
    duration_ms: int = 0
    status: str = CampaignStatus.SENT.value

    @property
    def processed(self) -> int:
        return self.sent + self.failed


def calculate_progress(processed: int, total: int) -> int:
    """Integer percentage, rounding halves up. An empty campaign is complete."""
    if total <= 0:
        return 100
    processed = max(0, min(processed, total))
    return (processed * 200 + total) // (2 * total)


def partition(items: Sequence, size: int) -> list[list]:
    if size <= 0:
        raise ValueError("Batch size must be positive")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


class BatchDeliveryEngine:
    """Delivers one campaign at a time.

    Parameters
    ----------
    campaigns : CampaignRepositoryProtocol, optional
        Campaign store; defaults to the PostgreSQL repository.
    provider : EmailProvider, optional
        Transport; defaults to the configured provider.
    rate_limiter : SendRateLimiter, optional
        Shared send limiter; ``None`` disables limiting.
    batch_size, batch_delay_ms, delivery_timeout_seconds : optional
        Override the corresponding settings.
    sleep : callable, optional
        Awaitable used for the inter-batch pause.
    """

    def __init__(
        self,
        campaigns: Optional[CampaignRepositoryProtocol] = None,
        provider: Optional[EmailProvider] = None,
        rate_limiter: Optional[SendRateLimiter] = None,
        batch_size: Optional[int] = None,
        batch_delay_ms: Optional[int] = None,
        delivery_timeout_seconds: Optional[float] = None,
        tracking_base_url: Optional[str] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.campaigns = campaigns or campaign_repository
        self._provider = provider
        self.rate_limiter = rate_limiter
        self.batch_size = batch_size if batch_size is not None else settings.campaign_batch_size
        self.batch_delay_ms = (
            batch_delay_ms if batch_delay_ms is not None else settings.campaign_batch_delay_ms
        )
        self.delivery_timeout_seconds = (
            delivery_timeout_seconds
            if delivery_timeout_seconds is not None
            else settings.delivery_timeout_seconds
        )
        self.tracking_base_url = tracking_base_url
        self._sleep = sleep

        if self.batch_size <= 0:
            raise ValueError("Batch size must be positive")
        if self.batch_delay_ms < 0:
            raise ValueError("Batch delay must not be negative")

    @property
    def provider(self) -> EmailProvider:
        return self._provider or get_email_provider()

    async def send_campaign(self, campaign: Campaign) -> CampaignSendResult:
        """Claim a scheduled campaign and deliver it to every pending recipient.

        Raises
        ------
        InvalidStateError
            If the campaign is not ``scheduled``. Nothing is modified.
        PipelineError
            If the run fails outside the per-recipient path. The campaign is
            left ``failed`` with the error recorded.
        """
        campaign_id = campaign.id
        ensure_transition(campaign.status, CampaignStatus.SENDING, campaign_id)

        started_at = utcnow()
        started = time.monotonic()
        claimed = await self.campaigns.transition_status(
            campaign_id,
            CampaignStatus.SCHEDULED.value,
            CampaignStatus.SENDING.value,
            sending_started_at=started_at,
            sent_at=campaign.sent_at or started_at,
            progress=0,
            last_error=None,
        )
        if not claimed:
            latest = await self.campaigns.get_campaign(campaign_id)
            current = latest.status if latest is not None else campaign.status
            raise InvalidStateError(current, CampaignStatus.SENDING.value, campaign_id)

        logger.info("Campaign %s claimed for sending", campaign_id)
        try:
            return await self._run(campaign, started)
        except Exception as exc:
            logger.error("Campaign %s failed: %s", campaign_id, exc, exc_info=True)
            await self._mark_failed(campaign_id, str(exc) or exc.__class__.__name__)
            raise PipelineError(campaign_id, str(exc) or exc.__class__.__name__) from exc

    async def _run(self, campaign: Campaign, started: float) -> CampaignSendResult:
        campaign_id = campaign.id
        pending = await self.campaigns.list_recipients(
            campaign_id, status=RecipientStatus.PENDING.value
        )
        total = max(campaign.total_recipients or 0, len(pending))
        already_processed = total - len(pending)
        prior_sent = campaign.sent_count or 0
        prior_failed = campaign.failed_count or 0

        result = CampaignSendResult(campaign_id=str(campaign_id))
        batches = partition(pending, self.batch_size)
        semaphore = asyncio.Semaphore(self.batch_size)

        for index, batch in enumerate(batches):
            latest = await self.campaigns.get_campaign(campaign_id)
            if latest is not None and latest.status != CampaignStatus.SENDING.value:
                logger.info(
                    "Campaign %s is %s, stopping after %d of %d batches",
                    campaign_id, latest.status, index, len(batches),
                )
                result.status = latest.status
                result.duration_ms = int((time.monotonic() - started) * 1000)
                return result

            settled = await asyncio.gather(
                *(self._deliver(campaign, recipient, semaphore) for recipient in batch),
                return_exceptions=True,
            )
            outcomes = [o for o in settled if isinstance(o, DeliveryOutcome)]
            await self.campaigns.record_delivery_outcomes(outcomes)
            errors = [o for o in settled if isinstance(o, BaseException)]
            if errors:
                raise errors[0]

            sent = sum(1 for o in outcomes if o.status == RecipientStatus.SENT.value)
            result.sent += sent
            result.failed += len(outcomes) - sent
            result.batches += 1

            progress = calculate_progress(already_processed + result.processed, total)
            await self.campaigns.update_campaign(
                campaign_id,
                progress=progress,
                sent_count=prior_sent + result.sent,
                failed_count=prior_failed + result.failed,
            )
            logger.info(
                "Campaign %s batch %d/%d done: sent=%d failed=%d progress=%d%%",
                campaign_id, index + 1, len(batches), sent, len(outcomes) - sent, progress,
            )

            if index < len(batches) - 1 and self.batch_delay_ms:
                await self._sleep(self.batch_delay_ms / 1000)

        result.duration_ms = int((time.monotonic() - started) * 1000)
        finished = await self.campaigns.transition_status(
            campaign_id,
            CampaignStatus.SENDING.value,
            CampaignStatus.SENT.value,
            progress=100,
            sent_count=prior_sent + result.sent,
            failed_count=prior_failed + result.failed,
            completed_at=utcnow(),
            send_duration_ms=result.duration_ms,
        )
        if not finished:
            latest = await self.campaigns.get_campaign(campaign_id)
            result.status = latest.status if latest is not None else result.status
            await self.campaigns.update_campaign(
                campaign_id,
                sent_count=prior_sent + result.sent,
                failed_count=prior_failed + result.failed,
            )
            logger.warning(
                "Campaign %s became %s during its last batch, not marking it sent",
                campaign_id, result.status,
            )
            return result
        logger.info(
            "Campaign %s sent: %d sent, %d failed in %d batches (%d ms)",
            campaign_id, result.sent, result.failed, result.batches, result.duration_ms,
        )
        return result

    async def _deliver(
        self,
        campaign: Campaign,
        recipient: CampaignRecipient,
        semaphore: asyncio.Semaphore,
    ) -> DeliveryOutcome:
        """Deliver to one recipient.

        Delivery problems become a failed outcome. A rate limiter error is
        not a recipient problem and propagates.
        """
        message_id = uuid4().hex
        async with semaphore:
            if self.rate_limiter is not None:
                await self.rate_limiter.acquire()
            return await self._send_one(campaign, recipient, message_id)

    async def _send_one(
        self,
        campaign: Campaign,
        recipient: CampaignRecipient,
        message_id: str,
    ) -> DeliveryOutcome:
        try:
            rendered = render_message(campaign, recipient, message_id, self.tracking_base_url)
            message = EmailMessage(
                to=recipient.email,
                subject=rendered.subject,
                html_body=rendered.html_body,
                from_email=campaign.from_address,
                from_name=campaign.from_name,
                reply_to=campaign.reply_to,
                message_id=message_id,
                campaign_id=str(campaign.id),
            )
            send_result = await asyncio.wait_for(
                self.provider.send_email(message),
                timeout=self.delivery_timeout_seconds,
            )
            if not send_result.success:
                raise RecipientDeliveryError(recipient.email, send_result.error or "rejected by provider")
        except asyncio.TimeoutError:
            error = RecipientDeliveryError(
                recipient.email, f"timed out after {self.delivery_timeout_seconds}s"
            )
        except RecipientDeliveryError as exc:
            error = exc
        except Exception as exc:
            error = RecipientDeliveryError(recipient.email, str(exc) or exc.__class__.__name__)
        else:
            return DeliveryOutcome(
                recipient_id=recipient.id,
                status=RecipientStatus.SENT.value,
                message_id=message_id,
                sent_at=utcnow(),
            )

        logger.warning("Campaign %s: %s", campaign.id, error)
        return DeliveryOutcome(
            recipient_id=recipient.id,
            status=RecipientStatus.FAILED.value,
            message_id=message_id,
            error=error.reason,
        )

    async def _mark_failed(self, campaign_id: CampaignId, error: str) -> None:
        try:
            await self.campaigns.update_campaign(
                campaign_id,
                status=CampaignStatus.FAILED.value,
                last_error=error,
            )
        except Exception:
            logger.exception("Could not mark campaign %s as failed", campaign_id)


def build_delivery_engine() -> BatchDeliveryEngine:
    """Engine wired to the configured store, transport and rate limit."""
    limiter = SendRateLimiter()
    return BatchDeliveryEngine(rate_limiter=limiter if limiter.enabled else None)
