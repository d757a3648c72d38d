"""
pytest configuration and fixtures for Piper Dispatch backend tests.
"""

import asyncio
import os
from datetime import datetime
from typing import Optional

import pytest

# Set environment variables before importing app modules
os.environ["ENVIRONMENT"] = "test"
os.environ["POSTGRES_HOST"] = "localhost"
os.environ["REDIS_HOST"] = "localhost"
os.environ["REDIS_DB"] = "15"
os.environ["TRACKING_BASE_URL"] = "http://track.test/api/v1/track"
os.environ["TRACKING_TOKEN_SECRET"] = ""
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["CAMPAIGN_BATCH_DELAY_MS"] = "0"

from piper_dispatch.models import (  # noqa: E402
    Campaign,
    CampaignRecipient,
    CampaignStatus,
    EmailClick,
    EmailOpen,
    EmailUnsubscribe,
    RecipientStatus,
    SpamComplaint,
    SubscriptionStatus,
)
from piper_dispatch.repositories.campaigns import as_uuid  # noqa: E402
from piper_dispatch.repositories.protocols import EngagementCounts  # noqa: E402
from piper_dispatch.services.email_provider import EmailMessage, EmailProvider, SendResult  # noqa: E402


class FakeCampaignRepository:
    """In-memory campaign store with the same contract as the SQL repository."""

    def __init__(self):
        self.campaigns: dict = {}
        self.recipients: dict = {}
        self.updates: list = []
        self.fail_update_for: set = set()

    async def create_campaign(self, campaign: Campaign) -> Campaign:
        self.campaigns[campaign.id] = campaign
        self.recipients.setdefault(campaign.id, [])
        return campaign

    async def get_campaign(self, campaign_id) -> Optional[Campaign]:
        return self.campaigns.get(as_uuid(campaign_id))

    async def update_campaign(self, campaign_id, **values) -> None:
        uid = as_uuid(campaign_id)
        if uid in self.fail_update_for:
            raise RuntimeError("database unavailable")
        campaign = self.campaigns.get(uid)
        if campaign is None:
            return
        self.updates.append((uid, dict(values)))
        for key, value in values.items():
            setattr(campaign, key, value)

    async def transition_status(self, campaign_id, expected, target, **values) -> bool:
        campaign = self.campaigns.get(as_uuid(campaign_id))
        if campaign is None or campaign.status != expected:
            return False
        await self.update_campaign(campaign_id, status=target, **values)
        return True

    async def add_recipients(self, campaign_id, recipients) -> int:
        uid = as_uuid(campaign_id)
        rows = self.recipients.setdefault(uid, [])
        for recipient in recipients:
            recipient.campaign_id = uid
            recipient.position = len(rows)
            rows.append(recipient)
        self.campaigns[uid].total_recipients = len(rows)
        return len(rows)

    async def list_campaigns(self, status=None, search=None, offset=0, limit=10):
        matches = [
            (index, c) for index, c in enumerate(self.campaigns.values())
            if not c.is_deleted
            and (not status or c.status == status)
            and (not search or search.lower() in f"{c.name}\n{c.subject}".lower())
        ]
        matches.sort(key=lambda pair: (pair[1].created_at, pair[0]), reverse=True)
        return [c for _, c in matches][offset:offset + limit], len(matches)

    async def remove_recipients(self, campaign_id, subscriber_ids) -> tuple:
        uid = as_uuid(campaign_id)
        rows = self.recipients.get(uid, [])
        kept = [r for r in rows if r.subscriber_id not in set(subscriber_ids)]
        self.recipients[uid] = kept
        self.campaigns[uid].total_recipients = len(kept)
        return len(rows) - len(kept), len(kept)

    async def list_recipients(self, campaign_id, status=None) -> list:
        rows = self.recipients.get(as_uuid(campaign_id), [])
        if status:
            rows = [r for r in rows if r.status == status]
        return sorted(rows, key=lambda r: r.position)

    async def record_delivery_outcomes(self, outcomes) -> None:
        by_id = {r.id: r for rows in self.recipients.values() for r in rows}
        for outcome in outcomes:
            recipient = by_id[outcome.recipient_id]
            recipient.status = outcome.status
            recipient.message_id = outcome.message_id
            recipient.sent_at = outcome.sent_at
            recipient.error = outcome.error

    async def list_due_campaigns(self, now: datetime) -> list:
        due = [
            c for c in self.campaigns.values()
            if c.status == CampaignStatus.SCHEDULED.value
            and c.scheduled_at is not None
            and c.scheduled_at <= now
            and (c.total_recipients or 0) > 0
            and not c.is_deleted
        ]
        return sorted(due, key=lambda c: c.scheduled_at)

    async def list_stale_stats_campaigns(self, refreshed_before: datetime) -> list:
        return [
            c for c in self.campaigns.values()
            if c.status == CampaignStatus.SENT.value
            and not c.is_deleted
            and (c.stats_refreshed_at is None or c.stats_refreshed_at < refreshed_before)
        ]

    async def list_expired_campaigns(self, sent_before: datetime) -> list:
        return [
            c for c in self.campaigns.values()
            if c.status == CampaignStatus.SENT.value
            and not c.is_deleted
            and c.sent_at is not None
            and c.sent_at < sent_before
        ]

    async def count_bounced_recipients(self, campaign_id) -> int:
        rows = self.recipients.get(as_uuid(campaign_id), [])
        return sum(1 for r in rows if r.status == RecipientStatus.BOUNCED.value)

    def _find(self, campaign_id, subscriber_id) -> list:
        return [
            r for r in self.recipients.get(as_uuid(campaign_id), [])
            if r.subscriber_id == subscriber_id
        ]

    async def stamp_recipient_engagement(self, campaign_id, subscriber_id, field, at) -> bool:
        changed = False
        for recipient in self._find(campaign_id, subscriber_id):
            if getattr(recipient, field) is None:
                setattr(recipient, field, at)
                changed = True
        return changed

    async def mark_recipient_unsubscribed(self, campaign_id, subscriber_id, at) -> bool:
        changed = False
        for recipient in self._find(campaign_id, subscriber_id):
            if recipient.subscription_status == SubscriptionStatus.SUBSCRIBED.value:
                recipient.subscription_status = SubscriptionStatus.UNSUBSCRIBED.value
                recipient.unsubscribed_at = at
                changed = True
        return changed

    async def mark_recipient_bounced(self, message_id, reason) -> bool:
        changed = False
        for rows in self.recipients.values():
            for recipient in rows:
                if recipient.message_id == message_id:
                    recipient.status = RecipientStatus.BOUNCED.value
                    recipient.bounce_reason = reason
                    changed = True
        return changed

    def progress_history(self, campaign_id) -> list[int]:
        uid = as_uuid(campaign_id)
        return [values["progress"] for key, values in self.updates if key == uid and "progress" in values]


class FakeTrackingRepository:
    """In-memory append-only event store."""

    def __init__(self):
        self.opens: list = []
        self.clicks: list = []
        self.unsubscribes: list = []
        self.complaints: list = []

    async def get_open(self, message_id, recipient_id):
        for event in self.opens:
            if event.message_id == message_id and event.recipient_id == recipient_id:
                return event
        return None

    async def insert_open(self, event):
        existing = await self.get_open(event.message_id, event.recipient_id)
        if existing is not None:
            return existing
        self.opens.append(event)
        return event

    async def add_event(self, event):
        if isinstance(event, EmailOpen):
            return await self.insert_open(event)
        if isinstance(event, EmailClick):
            self.clicks.append(event)
        elif isinstance(event, EmailUnsubscribe):
            self.unsubscribes.append(event)
        elif isinstance(event, SpamComplaint):
            self.complaints.append(event)
        else:
            raise TypeError(f"Unsupported event {event!r}")
        return event

    async def engagement_counts(self, campaign_id) -> EngagementCounts:
        def _count(events):
            scoped = [e for e in events if e.campaign_id == campaign_id]
            return len(scoped), len({e.recipient_id for e in scoped})

        counts = EngagementCounts()
        counts.opens, counts.unique_opens = _count(self.opens)
        counts.clicks, counts.unique_clicks = _count(self.clicks)
        counts.unsubscribes, counts.unique_unsubscribes = _count(self.unsubscribes)
        counts.spam_complaints, counts.unique_spam_complaints = _count(self.complaints)
        return counts


class FakeEmailProvider(EmailProvider):
    """Transport that records messages instead of delivering them."""

    def __init__(self, fail_for=(), hang_for=(), raise_for=()):
        self.sent: list[EmailMessage] = []
        self.attempts: list[EmailMessage] = []
        self.fail_for = set(fail_for)
        self.hang_for = set(hang_for)
        self.raise_for = set(raise_for)
        self.in_flight = 0
        self.max_in_flight = 0
        self.on_send = None

    async def send_email(self, message: EmailMessage) -> SendResult:
        self.attempts.append(message)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.on_send is not None:
                await self.on_send(message)
            if message.to in self.hang_for:
                await asyncio.sleep(3600)
            await asyncio.sleep(0)
            if message.to in self.raise_for:
                raise ConnectionError("connection reset by peer")
            if message.to in self.fail_for:
                return SendResult(success=False, message_id=message.message_id, error="550 mailbox unavailable")
            self.sent.append(message)
            return SendResult(success=True, message_id=message.message_id)
        finally:
            self.in_flight -= 1

    async def verify_connection(self) -> bool:
        return True


@pytest.fixture
def campaign_repo() -> FakeCampaignRepository:
    return FakeCampaignRepository()


@pytest.fixture
def tracking_repo() -> FakeTrackingRepository:
    return FakeTrackingRepository()


@pytest.fixture
def fake_provider() -> FakeEmailProvider:
    return FakeEmailProvider()


@pytest.fixture
def campaign_factory(campaign_repo):
    """Build and store a campaign with ``recipients`` numbered subscribers."""

    async def _create(
        recipients: int = 3,
        status: str = CampaignStatus.SCHEDULED.value,
        **values,
    ) -> Campaign:
        values.setdefault("name", "October Newsletter")
        values.setdefault("subject", "Hello {{firstName}}")
        values.setdefault(
            "content",
            '<html><body><p>Hi {{firstName}},</p>'
            '<a href="https://example.com/article">Read more</a></body></html>',
        )
        values.setdefault("from_address", "news@example.com")
        campaign = Campaign(status=status, **values)
        await campaign_repo.create_campaign(campaign)
        await campaign_repo.add_recipients(campaign.id, [
            CampaignRecipient(
                subscriber_id=f"sub-{i}",
                email=f"reader{i}@example.com",
                first_name=f"Reader{i}",
                last_name="Test",
            )
            for i in range(1, recipients + 1)
        ])
        return campaign

    return _create


@pytest.fixture
def provider_factory():
    """Build a FakeEmailProvider with failure or hang behaviour per address."""
    return FakeEmailProvider
