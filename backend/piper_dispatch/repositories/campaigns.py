"""
PostgreSQL-backed campaign store.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Sequence
from uuid import UUID

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from piper_dispatch.db.postgres import async_session_maker
from piper_dispatch.models.campaign import (
    Campaign,
    CampaignRecipient,
    CampaignStatus,
    RecipientStatus,
    SubscriptionStatus,
)
from piper_dispatch.repositories.protocols import CampaignId, DeliveryOutcome
from piper_dispatch.utils.dates import utcnow


def as_uuid(value: CampaignId) -> Optional[UUID]:
    """Coerce an id to UUID; ``None`` when it is not a valid UUID string."""
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        return None


class CampaignRepository:
    """Campaign and recipient persistence.

    Every method opens its own short-lived session so that progress written
    mid-send is committed and visible to other readers immediately.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory or async_session_maker

    async def create_campaign(self, campaign: Campaign) -> Campaign:
        async with self._session_factory() as session:
            session.add(campaign)
            await session.commit()
        return campaign

    async def get_campaign(self, campaign_id: CampaignId) -> Optional[Campaign]:
        uid = as_uuid(campaign_id)
        if uid is None:
            return None
        async with self._session_factory() as session:
            result = await session.execute(select(Campaign).where(Campaign.id == uid))
            return result.scalar_one_or_none()

    async def update_campaign(self, campaign_id: CampaignId, **values: Any) -> None:
        uid = as_uuid(campaign_id)
        if uid is None:
            return
        values.setdefault("updated_at", utcnow())
        async with self._session_factory() as session:
            await session.execute(
                update(Campaign).where(Campaign.id == uid).values(**values)
            )
            await session.commit()

    async def transition_status(
        self,
        campaign_id: CampaignId,
        expected: str,
        target: str,
        **values: Any,
    ) -> bool:
        uid = as_uuid(campaign_id)
        if uid is None:
            return False
        values.setdefault("updated_at", utcnow())
        async with self._session_factory() as session:
            result = await session.execute(
                update(Campaign)
                .where(Campaign.id == uid)
                .where(Campaign.status == expected)
                .values(status=target, **values)
            )
            await session.commit()
            return result.rowcount == 1

    async def add_recipients(
        self, campaign_id: CampaignId, recipients: Sequence[CampaignRecipient]
    ) -> int:
        uid = as_uuid(campaign_id)
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.max(CampaignRecipient.position))
                .where(CampaignRecipient.campaign_id == uid)
            )
            last_position = result.scalar()
            next_position = 0 if last_position is None else last_position + 1

            for offset, recipient in enumerate(recipients):
                recipient.campaign_id = uid
                recipient.position = next_position + offset
                session.add(recipient)
            await session.flush()

            total = await session.execute(
                select(func.count(CampaignRecipient.id))
                .where(CampaignRecipient.campaign_id == uid)
            )
            total_recipients = total.scalar() or 0
            await session.execute(
                update(Campaign)
                .where(Campaign.id == uid)
                .values(total_recipients=total_recipients, updated_at=utcnow())
            )
            await session.commit()
        return total_recipients

    async def list_campaigns(
        self,
        status: Optional[str] = None,
        search: Optional[str] = None,
        offset: int = 0,
        limit: int = 10,
    ) -> tuple[list[Campaign], int]:
        filters = [Campaign.is_deleted.is_(False)]
        if status:
            filters.append(Campaign.status == status)
        if search:
            pattern = f"%{search}%"
            filters.append(or_(Campaign.name.ilike(pattern), Campaign.subject.ilike(pattern)))

        async with self._session_factory() as session:
            total = await session.execute(select(func.count(Campaign.id)).where(*filters))
            result = await session.execute(
                select(Campaign)
                .where(*filters)
                .order_by(Campaign.created_at.desc())
                .offset(offset)
                .limit(limit)
            )
            return list(result.scalars().all()), total.scalar() or 0

    async def remove_recipients(
        self, campaign_id: CampaignId, subscriber_ids: Sequence[str]
    ) -> tuple[int, int]:
        uid = as_uuid(campaign_id)
        async with self._session_factory() as session:
            removed = await session.execute(
                delete(CampaignRecipient)
                .where(CampaignRecipient.campaign_id == uid)
                .where(CampaignRecipient.subscriber_id.in_(list(subscriber_ids)))
            )
            total = await session.execute(
                select(func.count(CampaignRecipient.id))
                .where(CampaignRecipient.campaign_id == uid)
            )
            total_recipients = total.scalar() or 0
            await session.execute(
                update(Campaign)
                .where(Campaign.id == uid)
                .values(total_recipients=total_recipients, updated_at=utcnow())
            )
            await session.commit()
        return removed.rowcount, total_recipients

    async def list_recipients(
        self, campaign_id: CampaignId, status: Optional[str] = None
    ) -> list[CampaignRecipient]:
        uid = as_uuid(campaign_id)
        query = select(CampaignRecipient).where(CampaignRecipient.campaign_id == uid)
        if status:
            query = query.where(CampaignRecipient.status == status)
        query = query.order_by(CampaignRecipient.position)
        async with self._session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def record_delivery_outcomes(self, outcomes: Sequence[DeliveryOutcome]) -> None:
        if not outcomes:
            return
        async with self._session_factory() as session:
            for outcome in outcomes:
                await session.execute(
                    update(CampaignRecipient)
                    .where(CampaignRecipient.id == outcome.recipient_id)
                    .values(
                        status=outcome.status,
                        message_id=outcome.message_id,
                        sent_at=outcome.sent_at,
                        error=outcome.error,
                    )
                )
            await session.commit()

    async def list_due_campaigns(self, now: datetime) -> list[Campaign]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Campaign)
                .where(Campaign.status == CampaignStatus.SCHEDULED.value)
                .where(Campaign.scheduled_at <= now)
                .where(Campaign.total_recipients > 0)
                .where(Campaign.is_deleted.is_(False))
                .order_by(Campaign.scheduled_at)
            )
            return list(result.scalars().all())

    async def list_stale_stats_campaigns(self, refreshed_before: datetime) -> list[Campaign]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Campaign)
                .where(Campaign.status == CampaignStatus.SENT.value)
                .where(Campaign.is_deleted.is_(False))
                .where(
                    Campaign.stats_refreshed_at.is_(None)
                    | (Campaign.stats_refreshed_at < refreshed_before)
                )
            )
            return list(result.scalars().all())

    async def list_expired_campaigns(self, sent_before: datetime) -> list[Campaign]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Campaign)
                .where(Campaign.status == CampaignStatus.SENT.value)
                .where(Campaign.is_deleted.is_(False))
                .where(Campaign.sent_at < sent_before)
            )
            return list(result.scalars().all())

    async def count_bounced_recipients(self, campaign_id: CampaignId) -> int:
        uid = as_uuid(campaign_id)
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count(CampaignRecipient.id))
                .where(CampaignRecipient.campaign_id == uid)
                .where(CampaignRecipient.status == RecipientStatus.BOUNCED.value)
            )
            return result.scalar() or 0

    async def stamp_recipient_engagement(
        self, campaign_id: str, subscriber_id: str, field: str, at: datetime
    ) -> bool:
        if field not in ("opened_at", "clicked_at"):
            raise ValueError(f"Unsupported engagement field: {field}")
        uid = as_uuid(campaign_id)
        if uid is None:
            return False
        column = getattr(CampaignRecipient, field)
        async with self._session_factory() as session:
            result = await session.execute(
                update(CampaignRecipient)
                .where(CampaignRecipient.campaign_id == uid)
                .where(CampaignRecipient.subscriber_id == subscriber_id)
                .where(column.is_(None))
                .values({field: at})
            )
            await session.commit()
            return result.rowcount > 0

    async def mark_recipient_unsubscribed(
        self, campaign_id: str, subscriber_id: str, at: datetime
    ) -> bool:
        uid = as_uuid(campaign_id)
        if uid is None:
            return False
        async with self._session_factory() as session:
            result = await session.execute(
                update(CampaignRecipient)
                .where(CampaignRecipient.campaign_id == uid)
                .where(CampaignRecipient.subscriber_id == subscriber_id)
                .where(CampaignRecipient.subscription_status == SubscriptionStatus.SUBSCRIBED.value)
                .values(
                    subscription_status=SubscriptionStatus.UNSUBSCRIBED.value,
                    unsubscribed_at=at,
                )
            )
            await session.commit()
            return result.rowcount > 0

    async def mark_recipient_bounced(self, message_id: str, reason: Optional[str]) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(CampaignRecipient)
                .where(CampaignRecipient.message_id == message_id)
                .values(status=RecipientStatus.BOUNCED.value, bounce_reason=reason)
            )
            await session.commit()
            return result.rowcount > 0


# Singleton instance
campaign_repository = CampaignRepository()
