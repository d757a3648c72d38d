"""
Error taxonomy for the delivery and tracking pipeline.
"""

from __future__ import annotations

from typing import Optional


class DispatchError(Exception):
    """Base class for all pipeline errors."""


class CampaignNotFoundError(DispatchError):
    """Raised when a campaign id does not resolve to a stored campaign."""

    def __init__(self, campaign_id: object):
        self.campaign_id = str(campaign_id)
        super().__init__(f"Campaign {self.campaign_id} not found")


class InvalidStateError(DispatchError):
    """Raised when a campaign status transition is not permitted."""

    def __init__(self, current: str, target: str, campaign_id: Optional[object] = None):
        self.current = current
        self.target = target
        self.campaign_id = str(campaign_id) if campaign_id is not None else None
        prefix = f"Campaign {self.campaign_id}: " if self.campaign_id else ""
        super().__init__(f"{prefix}cannot move from '{current}' to '{target}'")


class MalformedTokenError(DispatchError):
    """Raised when a tracking token cannot be decoded."""


class RecipientDeliveryError(DispatchError):
    """Delivery to a single recipient failed. Recorded, never propagated out of a batch."""

    def __init__(self, email: str, reason: str):
        self.email = email
        self.reason = reason
        super().__init__(f"Delivery to {email} failed: {reason}")


class PipelineError(DispatchError):
    """Unrecoverable failure while sending a campaign."""

    def __init__(self, campaign_id: object, message: str):
        self.campaign_id = str(campaign_id)
        self.message = message
        super().__init__(f"Campaign {self.campaign_id} failed: {message}")
