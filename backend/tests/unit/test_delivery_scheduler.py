"""
Tests for the periodic delivery scheduler.
"""

from datetime import timedelta

import pytest

from piper_dispatch.services.delivery_engine import BatchDeliveryEngine
from piper_dispatch.services.delivery_scheduler import DeliveryScheduler, SingleFlightGuard
from piper_dispatch.utils.dates import utcnow


@pytest.fixture
def engine(campaign_repo, fake_provider):
    return BatchDeliveryEngine(campaigns=campaign_repo, provider=fake_provider, batch_size=10, batch_delay_ms=0)


@pytest.fixture
def scheduler(campaign_repo, engine):
    return DeliveryScheduler(campaigns=campaign_repo, engine=engine)


class TestSingleFlightGuard:
    """Test cases for SingleFlightGuard."""

    def test_second_acquire_fails_until_release(self):
        guard = SingleFlightGuard()

        assert guard.try_acquire()
        assert guard.held
        assert not guard.try_acquire()

        guard.release()
        assert not guard.held
        assert guard.try_acquire()


class TestDeliveryScheduler:
    """Test cases for DeliveryScheduler.tick."""

    @pytest.mark.asyncio
    async def test_sends_only_due_campaigns(self, scheduler, campaign_factory, fake_provider):
        """Test due scheduled campaigns are sent and future or empty ones are not."""
        now = utcnow()
        due = await campaign_factory(recipients=2, scheduled_at=now - timedelta(minutes=5))
        future = await campaign_factory(recipients=2, scheduled_at=now + timedelta(hours=1))
        empty = await campaign_factory(recipients=0, scheduled_at=now - timedelta(minutes=5))
        draft = await campaign_factory(recipients=2, status="draft", scheduled_at=now - timedelta(minutes=5))

        result = await scheduler.tick(now)

        assert not result.skipped
        assert result.processed == 1
        assert due.status == "sent"
        assert future.status == "scheduled"
        assert empty.status == "scheduled"
        assert draft.status == "draft"
        assert len(fake_provider.sent) == 2

    @pytest.mark.asyncio
    async def test_overlapping_tick_is_skipped(self, campaign_repo, campaign_factory, provider_factory):
        """Test a tick started during a running tick does nothing and the campaign is sent once."""
        provider = provider_factory()
        engine = BatchDeliveryEngine(campaigns=campaign_repo, provider=provider, batch_size=10, batch_delay_ms=0)
        scheduler = DeliveryScheduler(campaigns=campaign_repo, engine=engine)
        campaign = await campaign_factory(recipients=3, scheduled_at=utcnow() - timedelta(minutes=1))
        overlapping = []

        async def tick_again(message):
            if not overlapping:
                overlapping.append(await scheduler.tick())

        provider.on_send = tick_again

        first = await scheduler.tick()

        assert first.processed == 1
        assert overlapping[0].skipped
        assert overlapping[0].processed == 0
        assert campaign.status == "sent"
        assert len(provider.sent) == 3
        assert not scheduler.guard.held

    @pytest.mark.asyncio
    async def test_held_guard_skips(self, scheduler, campaign_factory, fake_provider):
        """Test a guard held elsewhere causes an immediate skip."""
        await campaign_factory(recipients=1, scheduled_at=utcnow() - timedelta(minutes=1))
        scheduler.guard.try_acquire()

        result = await scheduler.tick()

        assert result.skipped
        assert fake_provider.attempts == []
        scheduler.guard.release()

    @pytest.mark.asyncio
    async def test_one_failing_campaign_does_not_stop_the_tick(self, campaign_repo, campaign_factory, fake_provider):
        """Test a pipeline failure is counted and the next campaign still runs."""
        now = utcnow()
        broken = await campaign_factory(recipients=2, scheduled_at=now - timedelta(minutes=10))
        healthy = await campaign_factory(recipients=2, scheduled_at=now - timedelta(minutes=5))

        original = campaign_repo.record_delivery_outcomes
        broken_ids = {r.id for r in campaign_repo.recipients[broken.id]}

        async def flaky(outcomes):
            if any(o.recipient_id in broken_ids for o in outcomes):
                raise RuntimeError("write timeout")
            await original(outcomes)

        campaign_repo.record_delivery_outcomes = flaky
        scheduler = DeliveryScheduler(
            campaigns=campaign_repo,
            engine=BatchDeliveryEngine(campaigns=campaign_repo, provider=fake_provider, batch_delay_ms=0),
        )

        result = await scheduler.tick(now)

        assert result.failed == 1
        assert result.processed == 1
        assert broken.status == "failed"
        assert healthy.status == "sent"
        assert not scheduler.guard.held

    @pytest.mark.asyncio
    async def test_campaign_claimed_elsewhere_is_skipped(self, campaign_repo, campaign_factory, fake_provider):
        """Test a campaign that changes state after listing is skipped, not failed."""
        campaign = await campaign_factory(recipients=2, scheduled_at=utcnow() - timedelta(minutes=1))

        async def list_then_cancel(now):
            stale = type(campaign)(id=campaign.id, name="x", subject="x", content="x", status="scheduled")
            campaign.status = "cancelled"
            return [stale]

        campaign_repo.list_due_campaigns = list_then_cancel
        scheduler = DeliveryScheduler(
            campaigns=campaign_repo,
            engine=BatchDeliveryEngine(campaigns=campaign_repo, provider=fake_provider),
        )

        result = await scheduler.tick()

        assert (result.processed, result.failed) == (0, 0)
        assert campaign.status == "cancelled"
        assert fake_provider.attempts == []

    @pytest.mark.asyncio
    async def test_guard_released_after_unexpected_error(self, campaign_repo):
        """Test the guard is released when listing due campaigns fails."""
        async def broken(now):
            raise RuntimeError("database unavailable")

        campaign_repo.list_due_campaigns = broken
        scheduler = DeliveryScheduler(campaigns=campaign_repo, engine=object())

        with pytest.raises(RuntimeError):
            await scheduler.tick()
        assert not scheduler.guard.held

    @pytest.mark.asyncio
    async def test_queue_status_reports_the_running_campaign(self, campaign_repo, campaign_factory, provider_factory):
        provider = provider_factory()
        scheduler = DeliveryScheduler(
            campaigns=campaign_repo,
            engine=BatchDeliveryEngine(campaigns=campaign_repo, provider=provider, batch_delay_ms=0),
        )
        campaign = await campaign_factory(recipients=1, scheduled_at=utcnow() - timedelta(minutes=1))
        seen = []

        async def capture(message):
            seen.append(scheduler.queue_status())

        provider.on_send = capture

        await scheduler.tick()

        assert seen[0]["is_processing"] is True
        assert seen[0]["current_campaign_id"] == str(campaign.id)
        idle = scheduler.queue_status()
        assert idle["is_processing"] is False
        assert idle["current_campaign_id"] is None
