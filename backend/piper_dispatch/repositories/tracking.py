"""
PostgreSQL-backed tracking event store.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import distinct, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from piper_dispatch.db.postgres import async_session_maker
from piper_dispatch.models.tracking import EmailClick, EmailOpen, EmailUnsubscribe, SpamComplaint
from piper_dispatch.repositories.protocols import EngagementCounts, TrackingEvent

logger = logging.getLogger(__name__)


class TrackingRepository:
    """Append-only storage for opens, clicks, unsubscribes and complaints."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory or async_session_maker

    async def get_open(self, message_id: str, recipient_id: str) -> Optional[EmailOpen]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(EmailOpen)
                .where(EmailOpen.message_id == message_id)
                .where(EmailOpen.recipient_id == recipient_id)
            )
            return result.scalar_one_or_none()

    async def insert_open(self, event: EmailOpen) -> EmailOpen:
        async with self._session_factory() as session:
            session.add(event)
            try:
                await session.commit()
                return event
            except IntegrityError:
                await session.rollback()
                logger.debug(
                    "Concurrent open for message %s recipient %s, keeping stored row",
                    event.message_id, event.recipient_id,
                )

        existing = await self.get_open(event.message_id, event.recipient_id)
        if existing is None:
            raise RuntimeError(
                f"Open for message {event.message_id} conflicted but no stored row was found"
            )
        return existing

    async def add_event(self, event: TrackingEvent) -> TrackingEvent:
        async with self._session_factory() as session:
            session.add(event)
            await session.commit()
        return event

    async def engagement_counts(self, campaign_id: str) -> EngagementCounts:
        counts = EngagementCounts()
        async with self._session_factory() as session:
            for model, total_attr, unique_attr in (
                (EmailOpen, "opens", "unique_opens"),
                (EmailClick, "clicks", "unique_clicks"),
                (EmailUnsubscribe, "unsubscribes", "unique_unsubscribes"),
                (SpamComplaint, "spam_complaints", "unique_spam_complaints"),
            ):
                result = await session.execute(
                    select(
                        func.count(model.id),
                        func.count(distinct(model.recipient_id)),
                    ).where(model.campaign_id == campaign_id)
                )
                total, unique = result.one()
                setattr(counts, total_attr, total or 0)
                setattr(counts, unique_attr, unique or 0)
        return counts


# Singleton instance
tracking_repository = TrackingRepository()
