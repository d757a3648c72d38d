"""
Integration tests for API endpoints.
"""

import base64
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from piper_dispatch.services.delivery_engine import BatchDeliveryEngine
from piper_dispatch.services.delivery_scheduler import DeliveryScheduler
from piper_dispatch.services.personalization import encode_url
from piper_dispatch.services.tracking_token import encode

TRACK = "/api/v1/track"


@pytest.fixture
def client(campaign_repo, tracking_repo):
    """Test client wired to in-memory stores."""
    from piper_dispatch.api.v1 import campaigns as campaigns_api
    from piper_dispatch.api.v1 import tracking as tracking_api
    from piper_dispatch.main import app
    from piper_dispatch.services.campaigns import CampaignService
    from piper_dispatch.services.stats_aggregator import StatsAggregator
    from piper_dispatch.services.tracking_service import TrackingService

    app.dependency_overrides[tracking_api.get_tracking_service] = lambda: TrackingService(
        tracking=tracking_repo, campaigns=campaign_repo
    )
    app.dependency_overrides[campaigns_api.get_campaign_service] = lambda: CampaignService(
        campaigns=campaign_repo
    )
    app.dependency_overrides[campaigns_api.get_stats_aggregator] = lambda: StatsAggregator(
        campaigns=campaign_repo, tracking=tracking_repo
    )

    with patch("piper_dispatch.main.init_db", new=AsyncMock()), \
            patch("piper_dispatch.main.close_db", new=AsyncMock()):
        with TestClient(app) as test_client:
            yield test_client

    app.dependency_overrides.clear()


class TestHealthEndpoints:
    """Test cases for health check endpoints."""

    def test_root_endpoint(self, client):
        """Test root endpoint returns app info."""
        response = client.get("/")

        assert response.status_code == 200
        data = response.json()
        assert "name" in data
        assert "version" in data
        assert "docs" in data

    def test_liveness(self, client):
        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    def test_health_ready(self, client):
        with patch("piper_dispatch.api.v1.health.check_database", new=AsyncMock()), \
                patch("piper_dispatch.api.v1.health.redis_client.ping", new=AsyncMock(return_value=True)):
            response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["delivery"]["is_processing"] is False

    def test_health_unhealthy(self, client):
        """Test health check reports 503 when dependencies are down."""
        with patch("piper_dispatch.api.v1.health.check_database", new=AsyncMock(side_effect=OSError("refused"))), \
                patch("piper_dispatch.api.v1.health.redis_client.ping", new=AsyncMock(return_value=False)):
            response = client.get("/health")

        assert response.status_code == 503
        checks = response.json()["detail"]["checks"]
        assert checks["postgres"]["status"] == "unhealthy"
        assert checks["redis"]["status"] == "unhealthy"


class TestTrackingEndpoints:
    """Test cases for public tracking endpoints."""

    @staticmethod
    def _token(campaign, subscriber="sub-1", link=""):
        return encode("msg-1", subscriber, str(campaign.id), link)

    @pytest.mark.asyncio
    async def test_open_pixel(self, client, campaign_factory, tracking_repo):
        """Test the pixel is served and the open recorded once."""
        campaign = await campaign_factory(status="sent")
        token = self._token(campaign)

        first = client.get(f"{TRACK}/open/{token}", headers={"User-Agent": "Mozilla/5.0 (iPad; CPU OS 17_0)"})
        client.get(f"{TRACK}/open/{token}")

        assert first.status_code == 200
        assert first.headers["content-type"] == "image/gif"
        assert len(first.content) == 43
        assert "no-store" in first.headers["cache-control"]
        assert len(tracking_repo.opens) == 1
        assert tracking_repo.opens[0].device_type == "mobile"

    def test_open_with_malformed_token_still_serves_pixel(self, client, tracking_repo):
        response = client.get(f"{TRACK}/open/not-a-token")

        assert response.status_code == 200
        assert len(response.content) == 43
        assert tracking_repo.opens == []

    @pytest.mark.asyncio
    async def test_click_redirects(self, client, campaign_factory, tracking_repo):
        campaign = await campaign_factory(status="sent")
        destination = "https://example.com/article?utm_source=news"

        response = client.get(
            f"{TRACK}/click/{self._token(campaign, link='abcd1234')}",
            params={"url": encode_url(destination)},
            follow_redirects=False,
        )

        assert response.status_code == 302
        assert response.headers["location"] == destination
        assert len(tracking_repo.clicks) == 1
        assert tracking_repo.clicks[0].utm_source == "news"

    @pytest.mark.asyncio
    async def test_standard_base64_token_and_url(self, client, campaign_factory, tracking_repo):
        """Test tokens with "/" reach the endpoint and a raw "+" in the url survives."""
        campaign = await campaign_factory(status="sent")
        token = base64.b64encode(f"ab?|sub-1|{campaign.id}".encode()).decode()
        destination = "https://example.com/?q=>>>"
        url = base64.b64encode(destination.encode()).decode()
        assert "/" in token and "+" in url

        opened = client.get(f"{TRACK}/open/{token}")
        clicked = client.get(f"{TRACK}/click/{token}?url={url}", follow_redirects=False)

        assert opened.status_code == 200
        assert tracking_repo.opens[0].message_id == "ab?"
        assert clicked.status_code == 302
        assert clicked.headers["location"] == "https://example.com/?q=%3E%3E%3E"
        assert tracking_repo.clicks[0].link_url == destination
        assert tracking_repo.clicks[0].recipient_id == "sub-1"

    def test_click_with_malformed_token_still_redirects(self, client, tracking_repo):
        response = client.get(
            f"{TRACK}/click/garbage",
            params={"url": encode_url("https://example.com")},
            follow_redirects=False,
        )

        assert response.status_code == 302
        assert tracking_repo.clicks == []

    @pytest.mark.parametrize("url", [None, "%%%", encode_url("javascript:alert(1)")])
    def test_click_rejects_bad_destination(self, client, url):
        """Test missing, undecodable and non-web destinations are refused."""
        params = {"url": url} if url else {}

        response = client.get(f"{TRACK}/click/{encode('m', 's', 'c')}", params=params, follow_redirects=False)

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unsubscribe_flow(self, client, campaign_factory, campaign_repo, tracking_repo):
        """Test the confirmation page and the form post."""
        campaign = await campaign_factory(status="sent")
        token = self._token(campaign, "sub-2")

        page = client.get(f"{TRACK}/unsubscribe/{token}")
        done = client.post(f"{TRACK}/unsubscribe/{token}", data={"reason": "too frequent"})

        assert page.status_code == 200
        assert "<form" in page.text
        assert done.status_code == 200
        assert "successfully unsubscribed" in done.text
        assert tracking_repo.unsubscribes[0].reason == "too frequent"
        assert campaign_repo.recipients[campaign.id][1].subscription_status == "unsubscribed"

    def test_unsubscribe_malformed_token(self, client, tracking_repo):
        page = client.get(f"{TRACK}/unsubscribe/broken")
        post = client.post(f"{TRACK}/unsubscribe/broken")

        assert page.status_code == 400
        assert "Invalid or expired" in page.text
        assert post.status_code == 400
        assert tracking_repo.unsubscribes == []

    @pytest.mark.asyncio
    async def test_spam_complaint(self, client, campaign_factory, tracking_repo):
        campaign = await campaign_factory(status="sent")

        response = client.post(
            f"{TRACK}/spam/{self._token(campaign)}",
            json={"complaint_type": "abuse", "feedback": "never subscribed"},
        )

        assert response.status_code == 200
        assert response.json() == {"status": "recorded", "complaint_type": "abuse"}
        assert tracking_repo.complaints[0].feedback == "never subscribed"

    def test_spam_complaint_malformed_token(self, client):
        response = client.post(f"{TRACK}/spam/%21%21")

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_bounce_webhook(self, client, campaign_factory, campaign_repo):
        campaign = await campaign_factory(status="sent")
        campaign_repo.recipients[campaign.id][0].message_id = "msg-bounce"

        matched = client.post(f"{TRACK}/bounce", json={"message_id": "msg-bounce", "reason": "mailbox full"})
        unknown = client.post(f"{TRACK}/bounce", json={"message_id": "nope"})

        assert matched.json()["status"] == "processed"
        assert unknown.json()["status"] == "unknown_message"
        assert campaign_repo.recipients[campaign.id][0].status == "bounced"


class TestCampaignEndpoints:
    """Test cases for campaign endpoints."""

    API = "/api/v1/campaigns"

    def _create(self, client):
        response = client.post(self.API, json={
            "name": "Weekly digest",
            "subject": "Hi {{firstName}}",
            "content": '<html><body><a href="https://example.com">Read</a></body></html>',
            "from_address": "news@example.com",
        })
        assert response.status_code == 201
        return response.json()

    def test_create_and_get(self, client):
        created = self._create(client)

        response = client.get(f"{self.API}/{created['id']}")

        assert response.status_code == 200
        assert response.json()["status"] == "draft"
        assert response.json()["progress"] == 0

    def test_unknown_campaign(self, client):
        assert client.get(f"{self.API}/00000000-0000-0000-0000-000000000000").status_code == 404
        assert client.get(f"{self.API}/not-a-uuid/progress").status_code == 404

    def test_recipient_ids_cannot_contain_delimiter(self, client):
        created = self._create(client)

        response = client.post(f"{self.API}/{created['id']}/recipients", json={
            "recipients": [{"subscriber_id": "a|b", "email": "a@example.com"}],
        })

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_send_lifecycle(self, client, campaign_repo, fake_provider):
        """Test create, add recipients, schedule, deliver on the next tick and read progress."""
        created = self._create(client)
        campaign_url = f"{self.API}/{created['id']}"

        added = client.post(f"{campaign_url}/recipients", json={"recipients": [
            {"subscriber_id": f"s{i}", "email": f"r{i}@example.com", "first_name": f"R{i}"}
            for i in range(5)
        ]})
        scheduled = client.post(f"{campaign_url}/schedule", json={})
        tick = await DeliveryScheduler(
            campaigns=campaign_repo,
            engine=BatchDeliveryEngine(campaigns=campaign_repo, provider=fake_provider, batch_size=2, batch_delay_ms=0),
        ).tick()
        progress = client.get(f"{campaign_url}/progress")
        recipients = client.get(f"{campaign_url}/recipients", params={"status": "sent"})

        assert added.json() == {"added": 5, "total_recipients": 5}
        assert scheduled.json()["status"] == "scheduled"
        assert tick.processed == 1
        assert progress.json()["status"] == "sent"
        assert progress.json()["progress"] == 100
        assert progress.json()["sent_count"] == 5
        assert [r["subscriber_id"] for r in recipients.json()] == [f"s{i}" for i in range(5)]
        assert len(fake_provider.sent) == 5

    @pytest.mark.asyncio
    async def test_future_schedule_waits_for_its_time(self, client, campaign_repo, fake_provider):
        """Test a campaign scheduled ahead is not delivered early and there is no send-now route."""
        created = self._create(client)
        campaign_url = f"{self.API}/{created['id']}"
        client.post(f"{campaign_url}/recipients", json={"recipients": [
            {"subscriber_id": "s1", "email": "r1@example.com"},
        ]})
        client.post(f"{campaign_url}/schedule", json={"scheduled_at": "2099-01-01T09:00:00Z"})

        send_now = client.post(f"{campaign_url}/send")
        tick = await DeliveryScheduler(
            campaigns=campaign_repo,
            engine=BatchDeliveryEngine(campaigns=campaign_repo, provider=fake_provider, batch_delay_ms=0),
        ).tick()

        assert send_now.status_code in (404, 405)
        assert tick.processed == 0
        assert client.get(campaign_url).json()["status"] == "scheduled"
        assert fake_provider.attempts == []

    @pytest.mark.asyncio
    async def test_pause_scheduled_is_conflict(self, client, campaign_factory):
        campaign = await campaign_factory(status="scheduled")

        response = client.post(f"{self.API}/{campaign.id}/pause")

        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["current_status"] == "scheduled"
        assert detail["requested_status"] == "paused"

    @pytest.mark.asyncio
    async def test_cancel(self, client, campaign_factory):
        campaign = await campaign_factory(status="draft")

        response = client.post(f"{self.API}/{campaign.id}/cancel")

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_refresh_stats(self, client, campaign_factory):
        campaign = await campaign_factory(status="sent", sent_count=3)
        client.get(f"{TRACK}/open/{encode('m1', 'sub-1', str(campaign.id))}")

        response = client.post(f"{self.API}/{campaign.id}/stats/refresh")

        assert response.status_code == 200
        stats = response.json()
        assert stats["unique_opened"] == 1
        assert stats["open_rate"] == 33.33
        assert stats["refreshed_at"] is not None


class TestCampaignManagementEndpoints:
    """Test cases for listing, editing and deleting campaigns."""

    API = "/api/v1/campaigns"

    @pytest.mark.asyncio
    async def test_list_filters_and_paginates(self, client, campaign_factory):
        await campaign_factory(recipients=0, status="draft", name="Spring sale")
        await campaign_factory(recipients=0, status="sent", name="Weekly digest")
        await campaign_factory(recipients=0, status="draft", name="Weekly digest 2")
        deleted = await campaign_factory(recipients=0, status="draft", name="Weekly old")
        deleted.is_deleted = True

        everything = client.get(self.API).json()
        drafts = client.get(self.API, params={"status": "draft"}).json()
        weekly = client.get(self.API, params={"search": "WEEKLY", "limit": 1, "page": 2}).json()

        assert everything["total"] == 3
        assert drafts["total"] == 2
        assert {c["name"] for c in drafts["campaigns"]} == {"Spring sale", "Weekly digest 2"}
        assert weekly["total"] == 2
        assert weekly["pages"] == 2
        assert len(weekly["campaigns"]) == 1
        assert weekly["campaigns"][0]["name"].startswith("Weekly digest")

    def test_list_rejects_oversized_page(self, client):
        assert client.get(self.API, params={"limit": 500}).status_code == 422

    @pytest.mark.asyncio
    async def test_update_draft(self, client, campaign_factory):
        campaign = await campaign_factory(recipients=0, status="draft")

        response = client.put(f"{self.API}/{campaign.id}", json={"subject": "New subject"})

        assert response.status_code == 200
        assert response.json()["subject"] == "New subject"
        assert response.json()["name"] == "October Newsletter"
        assert campaign.subject == "New subject"

    @pytest.mark.asyncio
    async def test_update_scheduled_is_conflict(self, client, campaign_factory):
        campaign = await campaign_factory(status="scheduled")

        response = client.put(f"{self.API}/{campaign.id}", json={"name": "Renamed"})

        assert response.status_code == 409
        assert response.json()["detail"]["current_status"] == "scheduled"
        assert campaign.name == "October Newsletter"

    @pytest.mark.asyncio
    async def test_soft_delete(self, client, campaign_factory):
        """Test a deleted draft disappears from reads but is kept in the store."""
        campaign = await campaign_factory(recipients=0, status="draft")

        response = client.delete(f"{self.API}/{campaign.id}")

        assert response.status_code == 200
        assert campaign.is_deleted
        assert campaign.deleted_at is not None
        assert client.get(f"{self.API}/{campaign.id}").status_code == 404
        assert client.get(self.API).json()["total"] == 0

    @pytest.mark.asyncio
    async def test_delete_sent_is_conflict(self, client, campaign_factory):
        campaign = await campaign_factory(status="sent")

        assert client.delete(f"{self.API}/{campaign.id}").status_code == 409
        assert not campaign.is_deleted

    def test_delete_unknown(self, client):
        assert client.delete(f"{self.API}/00000000-0000-0000-0000-000000000000").status_code == 404

    @pytest.mark.asyncio
    async def test_remove_recipients(self, client, campaign_factory, campaign_repo):
        """Test named subscribers are dropped and the rest keep their order."""
        campaign = await campaign_factory(recipients=4, status="draft")

        response = client.request(
            "DELETE",
            f"{self.API}/{campaign.id}/recipients",
            json={"subscriber_ids": ["sub-2", "sub-9"]},
        )

        assert response.json() == {"removed": 1, "total_recipients": 3}
        remaining = await campaign_repo.list_recipients(campaign.id)
        assert [r.subscriber_id for r in remaining] == ["sub-1", "sub-3", "sub-4"]
        assert campaign.total_recipients == 3

    @pytest.mark.asyncio
    async def test_remove_recipients_requires_draft(self, client, campaign_factory):
        campaign = await campaign_factory(recipients=2, status="scheduled")

        response = client.request(
            "DELETE", f"{self.API}/{campaign.id}/recipients", json={"subscriber_ids": ["sub-1"]}
        )

        assert response.status_code == 409
        assert campaign.total_recipients == 2

    def test_queue_status(self, client):
        from piper_dispatch.services.delivery_scheduler import delivery_scheduler

        idle = client.get(f"{self.API}/queue/status").json()
        delivery_scheduler.guard.try_acquire()
        try:
            busy = client.get(f"{self.API}/queue/status").json()
        finally:
            delivery_scheduler.guard.release()

        assert idle["is_processing"] is False
        assert busy["is_processing"] is True
        assert busy["timestamp"]
