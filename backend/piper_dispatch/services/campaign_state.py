"""
Campaign lifecycle transitions.
"""

from __future__ import annotations

from typing import Optional

from piper_dispatch.core.exceptions import InvalidStateError
from piper_dispatch.models.campaign import CampaignStatus

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    CampaignStatus.DRAFT.value: frozenset({
        CampaignStatus.SCHEDULED.value,
        CampaignStatus.CANCELLED.value,
    }),
    CampaignStatus.SCHEDULED.value: frozenset({
        CampaignStatus.SENDING.value,
        CampaignStatus.CANCELLED.value,
        CampaignStatus.DRAFT.value,
    }),
    CampaignStatus.SENDING.value: frozenset({
        CampaignStatus.SENT.value,
        CampaignStatus.FAILED.value,
        CampaignStatus.PAUSED.value,
    }),
    CampaignStatus.PAUSED.value: frozenset({
        CampaignStatus.SCHEDULED.value,
        CampaignStatus.CANCELLED.value,
    }),
    CampaignStatus.SENT.value: frozenset(),
    CampaignStatus.CANCELLED.value: frozenset(),
    CampaignStatus.FAILED.value: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)


def _value(status) -> str:
    return status.value if isinstance(status, CampaignStatus) else str(status)


def can_transition(current, target) -> bool:
    return _value(target) in ALLOWED_TRANSITIONS.get(_value(current), frozenset())


def ensure_transition(current, target, campaign_id: Optional[object] = None) -> None:
    """Raise ``InvalidStateError`` unless ``current -> target`` is permitted."""
    if not can_transition(current, target):
        raise InvalidStateError(_value(current), _value(target), campaign_id)
