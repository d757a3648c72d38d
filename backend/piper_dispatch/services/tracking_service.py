"""
Engagement event ingestion.

Records opens, clicks, unsubscribes, spam complaints and bounces reported
through tracking URLs and webhooks. Opens are recorded once per
(message, recipient); every other event is appended as it arrives.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qs, urlparse

from piper_dispatch.models.tracking import (
    ComplaintType,
    DeviceType,
    EmailClick,
    EmailOpen,
    EmailUnsubscribe,
    SpamComplaint,
)
from piper_dispatch.repositories.campaigns import campaign_repository
from piper_dispatch.repositories.protocols import CampaignRepositoryProtocol, TrackingRepositoryProtocol
from piper_dispatch.repositories.tracking import tracking_repository
from piper_dispatch.services.tracking_token import TrackingToken
from piper_dispatch.utils.dates import utcnow

logger = logging.getLogger(__name__)

_MOBILE_MARKERS = ("mobile", "android", "iphone", "ipad", "phone")
_TABLET_MARKERS = ("tablet", "ipad")
_DESKTOP_MARKERS = ("windows", "macintosh", "linux", "x11")


@dataclass
class RequestMeta:
    """Client details captured from the tracking request."""
    ip: Optional[str] = None
    user_agent: Optional[str] = None


def detect_device_type(user_agent: Optional[str]) -> str:
    """Classify a user agent as mobile, tablet, desktop or other.

    Mobile markers win, so iPads and Android tablets are reported as mobile.
    """
    ua = (user_agent or "").lower()
    if not ua:
        return DeviceType.OTHER.value
    if any(marker in ua for marker in _MOBILE_MARKERS):
        return DeviceType.MOBILE.value
    if any(marker in ua for marker in _TABLET_MARKERS):
        return DeviceType.TABLET.value
    if any(marker in ua for marker in _DESKTOP_MARKERS):
        return DeviceType.DESKTOP.value
    return DeviceType.OTHER.value


def extract_utm(url: str) -> dict[str, Optional[str]]:
    params = parse_qs(urlparse(url).query)
    return {
        key: params[key][0] if params.get(key) else None
        for key in ("utm_source", "utm_medium", "utm_campaign")
    }


class TrackingService:
    """Record engagement events against decoded tracking tokens."""

    def __init__(
        self,
        tracking: Optional[TrackingRepositoryProtocol] = None,
        campaigns: Optional[CampaignRepositoryProtocol] = None,
    ):
        self.tracking = tracking or tracking_repository
        self.campaigns = campaigns or campaign_repository

    async def record_open(self, token: TrackingToken, meta: RequestMeta) -> EmailOpen:
        """Record the first open of a message; repeats return the stored event.

        Parameters
        ----------
        token : TrackingToken
            Decoded token from the pixel URL.
        meta : RequestMeta
            Requesting client's IP and user agent.

        Returns
        -------
        EmailOpen
            The stored open, new or pre-existing.
        """
        existing = await self.tracking.get_open(token.message_id, token.recipient_id)
        if existing is not None:
            logger.debug(
                "Repeat open ignored: message=%s recipient=%s",
                token.message_id, token.recipient_id,
            )
            return existing

        event = await self.tracking.insert_open(EmailOpen(
            message_id=token.message_id,
            recipient_id=token.recipient_id,
            campaign_id=token.campaign_id,
            ip_address=meta.ip,
            user_agent=meta.user_agent,
            device_type=detect_device_type(meta.user_agent),
        ))
        await self.campaigns.stamp_recipient_engagement(
            token.campaign_id, token.recipient_id, "opened_at", event.opened_at
        )
        logger.info(
            "Open recorded: campaign=%s recipient=%s",
            token.campaign_id, token.recipient_id,
        )
        return event

    async def record_click(self, token: TrackingToken, url: str, meta: RequestMeta) -> EmailClick:
        """Append a click. Every click is stored, including repeats."""
        event = await self.tracking.add_event(EmailClick(
            message_id=token.message_id,
            recipient_id=token.recipient_id,
            campaign_id=token.campaign_id,
            link_url=url,
            link_id=token.link_id or None,
            ip_address=meta.ip,
            user_agent=meta.user_agent,
            device_type=detect_device_type(meta.user_agent),
            **extract_utm(url),
        ))
        await self.campaigns.stamp_recipient_engagement(
            token.campaign_id, token.recipient_id, "clicked_at", event.clicked_at
        )
        logger.info(
            "Click recorded: campaign=%s recipient=%s link=%s",
            token.campaign_id, token.recipient_id, token.link_id,
        )
        return event

    async def record_unsubscribe(
        self,
        token: TrackingToken,
        meta: RequestMeta,
        reason: Optional[str] = None,
    ) -> EmailUnsubscribe:
        event = await self.tracking.add_event(EmailUnsubscribe(
            message_id=token.message_id,
            recipient_id=token.recipient_id,
            campaign_id=token.campaign_id,
            ip_address=meta.ip,
            reason=reason,
        ))
        await self.campaigns.mark_recipient_unsubscribed(
            token.campaign_id, token.recipient_id, event.unsubscribed_at
        )
        logger.info(
            "Unsubscribe recorded: campaign=%s recipient=%s",
            token.campaign_id, token.recipient_id,
        )
        return event

    async def record_spam_complaint(
        self,
        token: TrackingToken,
        meta: RequestMeta,
        complaint_type: str = ComplaintType.SPAM.value,
        feedback: Optional[str] = None,
    ) -> SpamComplaint:
        """Append a complaint and opt the recipient out."""
        complaint_type = ComplaintType(complaint_type).value
        event = await self.tracking.add_event(SpamComplaint(
            message_id=token.message_id,
            recipient_id=token.recipient_id,
            campaign_id=token.campaign_id,
            ip_address=meta.ip,
            complaint_type=complaint_type,
            feedback=feedback,
        ))
        await self.campaigns.mark_recipient_unsubscribed(
            token.campaign_id, token.recipient_id, event.complained_at
        )
        logger.warning(
            "Spam complaint (%s): campaign=%s recipient=%s",
            complaint_type, token.campaign_id, token.recipient_id,
        )
        return event

    async def record_bounce(self, message_id: str, reason: Optional[str] = None) -> bool:
        """Mark the recipient whose delivery used ``message_id`` as bounced."""
        matched = await self.campaigns.mark_recipient_bounced(message_id, reason)
        if matched:
            logger.info("Bounce recorded for message %s: %s", message_id, reason)
        else:
            logger.warning("Bounce for unknown message %s", message_id)
        return matched


# Singleton instance
tracking_service = TrackingService()
