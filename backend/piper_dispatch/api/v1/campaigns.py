"""
Campaign API endpoints.

Campaign creation, recipient lists, operator lifecycle actions and
delivery/engagement reporting.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, EmailStr, Field

from piper_dispatch.core.exceptions import CampaignNotFoundError, InvalidStateError
from piper_dispatch.models.campaign import Campaign, CampaignStatus, RecipientStatus
from piper_dispatch.services.campaigns import CampaignService, campaign_service
from piper_dispatch.services.delivery_scheduler import delivery_scheduler
from piper_dispatch.services.stats_aggregator import StatsAggregator, stats_aggregator

router = APIRouter(prefix="/campaigns", tags=["Campaigns"])


# ============================================================================
# Request/Response Models
# ============================================================================


class CampaignCreate(BaseModel):
    """Request to create a new campaign."""
    name: str = Field(..., min_length=1, max_length=200)
    subject: str = Field(..., min_length=1, max_length=300)
    content: str = Field(..., min_length=1)
    from_name: Optional[str] = Field(None, max_length=255)
    from_address: Optional[EmailStr] = None
    reply_to: Optional[EmailStr] = None


class CampaignUpdate(BaseModel):
    """Request to edit a draft campaign. Omitted fields are left unchanged."""
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    subject: Optional[str] = Field(None, min_length=1, max_length=300)
    content: Optional[str] = Field(None, min_length=1)
    from_name: Optional[str] = Field(None, max_length=255)
    from_address: Optional[EmailStr] = None
    reply_to: Optional[EmailStr] = None


class RecipientIn(BaseModel):
    subscriber_id: str = Field(..., min_length=1, max_length=255, pattern=r"^[^|]+$")
    email: EmailStr
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class AddRecipientsRequest(BaseModel):
    """Request to add recipients to a campaign."""
    recipients: list[RecipientIn] = Field(..., min_length=1)


class RemoveRecipientsRequest(BaseModel):
    subscriber_ids: list[str] = Field(..., min_length=1)


class ScheduleRequest(BaseModel):
    scheduled_at: Optional[datetime] = Field(None, description="Defaults to now")


class CampaignResponse(BaseModel):
    """Campaign response."""
    id: str
    name: str
    subject: str
    status: str
    from_name: Optional[str] = None
    from_address: Optional[str] = None
    reply_to: Optional[str] = None
    progress: int = 0
    total_recipients: int = 0
    sent_count: int = 0
    failed_count: int = 0
    scheduled_at: Optional[str] = None
    sending_started_at: Optional[str] = None
    completed_at: Optional[str] = None
    send_duration_ms: Optional[int] = None
    last_error: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class CampaignListResponse(BaseModel):
    """Paginated campaign list response."""
    campaigns: list[CampaignResponse]
    total: int
    page: int
    limit: int
    pages: int


class QueueStatusResponse(BaseModel):
    is_processing: bool
    current_campaign_id: Optional[str] = None
    timestamp: str


class RecipientResponse(BaseModel):
    """Campaign recipient response."""
    subscriber_id: str
    email: str
    position: int
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    status: str
    subscription_status: str
    message_id: Optional[str] = None
    error: Optional[str] = None
    sent_at: Optional[str] = None
    opened_at: Optional[str] = None
    clicked_at: Optional[str] = None


class CampaignProgressResponse(BaseModel):
    campaign_id: str
    status: str
    progress: int
    total_recipients: int
    sent_count: int
    failed_count: int


class CampaignStatsResponse(BaseModel):
    """Campaign statistics response."""
    sent: int
    failed: int
    delivered: int
    bounced: int
    opened: int
    unique_opened: int
    clicked: int
    unique_clicked: int
    unsubscribed: int
    unique_unsubscribed: int
    spam_complaints: int
    unique_spam_complaints: int
    open_rate: float
    click_rate: float
    click_through_rate: float
    refreshed_at: Optional[str] = None


# ============================================================================
# Dependencies and Helpers
# ============================================================================


def get_campaign_service() -> CampaignService:
    return campaign_service


def get_stats_aggregator() -> StatsAggregator:
    return stats_aggregator


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def campaign_to_response(campaign: Campaign) -> CampaignResponse:
    """Convert Campaign to response model."""
    return CampaignResponse(
        id=str(campaign.id),
        name=campaign.name,
        subject=campaign.subject,
        status=campaign.status,
        from_name=campaign.from_name,
        from_address=campaign.from_address,
        reply_to=campaign.reply_to,
        progress=campaign.progress or 0,
        total_recipients=campaign.total_recipients or 0,
        sent_count=campaign.sent_count or 0,
        failed_count=campaign.failed_count or 0,
        scheduled_at=_iso(campaign.scheduled_at),
        sending_started_at=_iso(campaign.sending_started_at),
        completed_at=_iso(campaign.completed_at),
        send_duration_ms=campaign.send_duration_ms,
        last_error=campaign.last_error,
        created_at=_iso(campaign.created_at),
        updated_at=_iso(campaign.updated_at),
    )


def stats_to_response(campaign: Campaign) -> CampaignStatsResponse:
    return CampaignStatsResponse(
        sent=campaign.sent_count or 0,
        failed=campaign.failed_count or 0,
        delivered=campaign.delivered_count or 0,
        bounced=campaign.bounced_count or 0,
        opened=campaign.opened_count or 0,
        unique_opened=campaign.unique_opened_count or 0,
        clicked=campaign.clicked_count or 0,
        unique_clicked=campaign.unique_clicked_count or 0,
        unsubscribed=campaign.unsubscribed_count or 0,
        unique_unsubscribed=campaign.unique_unsubscribed_count or 0,
        spam_complaints=campaign.spam_complaint_count or 0,
        unique_spam_complaints=campaign.unique_spam_complaint_count or 0,
        open_rate=campaign.open_rate or 0.0,
        click_rate=campaign.click_rate or 0.0,
        click_through_rate=campaign.click_through_rate or 0.0,
        refreshed_at=_iso(campaign.stats_refreshed_at),
    )


def _not_found(e: CampaignNotFoundError) -> HTTPException:
    return HTTPException(status_code=404, detail=str(e))


def _conflict(e: InvalidStateError) -> HTTPException:
    return HTTPException(
        status_code=409,
        detail={"message": str(e), "current_status": e.current, "requested_status": e.target},
    )


# ============================================================================
# Endpoints
# ============================================================================


@router.post("", response_model=CampaignResponse, status_code=201)
async def create_campaign(
    request: CampaignCreate,
    service: CampaignService = Depends(get_campaign_service),
):
    """Create a new draft campaign."""
    campaign = await service.create_campaign(
        name=request.name,
        subject=request.subject,
        content=request.content,
        from_name=request.from_name,
        from_address=request.from_address,
        reply_to=request.reply_to,
    )
    return campaign_to_response(campaign)


@router.get("", response_model=CampaignListResponse)
async def list_campaigns(
    status: Optional[CampaignStatus] = Query(None, description="Filter by status"),
    search: Optional[str] = Query(None, description="Match name or subject"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    service: CampaignService = Depends(get_campaign_service),
):
    """List campaigns, newest first."""
    campaigns, total = await service.list_campaigns(
        status=status.value if status else None, search=search, page=page, limit=limit
    )
    return CampaignListResponse(
        campaigns=[campaign_to_response(c) for c in campaigns],
        total=total,
        page=page,
        limit=limit,
        pages=math.ceil(total / limit),
    )


@router.get("/queue/status", response_model=QueueStatusResponse)
async def get_queue_status():
    """Whether this process is currently running a delivery tick."""
    return delivery_scheduler.queue_status()


@router.get("/{campaign_id}", response_model=CampaignResponse)
async def get_campaign(
    campaign_id: str,
    service: CampaignService = Depends(get_campaign_service),
):
    try:
        return campaign_to_response(await service.get_campaign(campaign_id))
    except CampaignNotFoundError as e:
        raise _not_found(e)


@router.put("/{campaign_id}", response_model=CampaignResponse)
async def update_campaign(
    campaign_id: str,
    request: CampaignUpdate,
    service: CampaignService = Depends(get_campaign_service),
):
    """Edit a draft campaign."""
    return await _apply(
        lambda cid: service.update_campaign(cid, **request.model_dump(exclude_unset=True)),
        campaign_id,
    )


@router.delete("/{campaign_id}")
async def delete_campaign(
    campaign_id: str,
    service: CampaignService = Depends(get_campaign_service),
):
    """Soft delete a draft campaign."""
    try:
        await service.delete_campaign(campaign_id)
    except CampaignNotFoundError as e:
        raise _not_found(e)
    except InvalidStateError as e:
        raise _conflict(e)
    return {"status": "deleted", "campaign_id": campaign_id}


@router.post("/{campaign_id}/recipients")
async def add_recipients(
    campaign_id: str,
    request: AddRecipientsRequest,
    service: CampaignService = Depends(get_campaign_service),
):
    """Append recipients; send order follows the request order."""
    try:
        total = await service.add_recipients(
            campaign_id, [r.model_dump() for r in request.recipients]
        )
    except CampaignNotFoundError as e:
        raise _not_found(e)
    except InvalidStateError as e:
        raise _conflict(e)
    return {"added": len(request.recipients), "total_recipients": total}


@router.delete("/{campaign_id}/recipients")
async def remove_recipients(
    campaign_id: str,
    request: RemoveRecipientsRequest,
    service: CampaignService = Depends(get_campaign_service),
):
    try:
        removed, total = await service.remove_recipients(campaign_id, request.subscriber_ids)
    except CampaignNotFoundError as e:
        raise _not_found(e)
    except InvalidStateError as e:
        raise _conflict(e)
    return {"removed": removed, "total_recipients": total}


@router.get("/{campaign_id}/recipients", response_model=list[RecipientResponse])
async def list_recipients(
    campaign_id: str,
    status: Optional[RecipientStatus] = Query(None, description="Filter by delivery status"),
    service: CampaignService = Depends(get_campaign_service),
):
    try:
        recipients = await service.list_recipients(
            campaign_id, status=status.value if status else None
        )
    except CampaignNotFoundError as e:
        raise _not_found(e)

    return [
        RecipientResponse(
            subscriber_id=r.subscriber_id,
            email=r.email,
            position=r.position,
            first_name=r.first_name,
            last_name=r.last_name,
            status=r.status,
            subscription_status=r.subscription_status,
            message_id=r.message_id,
            error=r.error,
            sent_at=_iso(r.sent_at),
            opened_at=_iso(r.opened_at),
            clicked_at=_iso(r.clicked_at),
        )
        for r in recipients
    ]


@router.post("/{campaign_id}/schedule", response_model=CampaignResponse)
async def schedule_campaign(
    campaign_id: str,
    request: Optional[ScheduleRequest] = None,
    service: CampaignService = Depends(get_campaign_service),
):
    """Schedule a draft campaign, or resume a paused one."""
    try:
        campaign = await service.schedule(
            campaign_id, request.scheduled_at if request else None
        )
    except CampaignNotFoundError as e:
        raise _not_found(e)
    except InvalidStateError as e:
        raise _conflict(e)
    return campaign_to_response(campaign)


async def _apply(action, campaign_id: str) -> CampaignResponse:
    try:
        return campaign_to_response(await action(campaign_id))
    except CampaignNotFoundError as e:
        raise _not_found(e)
    except InvalidStateError as e:
        raise _conflict(e)


@router.post("/{campaign_id}/unschedule", response_model=CampaignResponse)
async def unschedule_campaign(
    campaign_id: str,
    service: CampaignService = Depends(get_campaign_service),
):
    return await _apply(service.unschedule, campaign_id)


@router.post("/{campaign_id}/pause", response_model=CampaignResponse)
async def pause_campaign(
    campaign_id: str,
    service: CampaignService = Depends(get_campaign_service),
):
    """Pause a sending campaign. Delivery stops before the next batch."""
    return await _apply(service.pause, campaign_id)


@router.post("/{campaign_id}/cancel", response_model=CampaignResponse)
async def cancel_campaign(
    campaign_id: str,
    service: CampaignService = Depends(get_campaign_service),
):
    return await _apply(service.cancel, campaign_id)


@router.get("/{campaign_id}/progress", response_model=CampaignProgressResponse)
async def get_progress(
    campaign_id: str,
    service: CampaignService = Depends(get_campaign_service),
):
    try:
        return await service.get_progress(campaign_id)
    except CampaignNotFoundError as e:
        raise _not_found(e)


@router.get("/{campaign_id}/stats", response_model=CampaignStatsResponse)
async def get_stats(
    campaign_id: str,
    service: CampaignService = Depends(get_campaign_service),
):
    try:
        return stats_to_response(await service.get_campaign(campaign_id))
    except CampaignNotFoundError as e:
        raise _not_found(e)


@router.post("/{campaign_id}/stats/refresh", response_model=CampaignStatsResponse)
async def refresh_stats(
    campaign_id: str,
    service: CampaignService = Depends(get_campaign_service),
    aggregator: StatsAggregator = Depends(get_stats_aggregator),
):
    """Recompute engagement statistics from the tracking events now."""
    try:
        await aggregator.refresh_campaign(campaign_id)
        return stats_to_response(await service.get_campaign(campaign_id))
    except CampaignNotFoundError as e:
        raise _not_found(e)
