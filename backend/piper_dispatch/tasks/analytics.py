from dataclasses import asdict

from celery import shared_task

from piper_dispatch.tasks.runner import run_async


@shared_task(bind=True, queue="default")
def refresh_campaign_stats(self) -> dict:
    from piper_dispatch.services.stats_aggregator import stats_aggregator

    return asdict(run_async(stats_aggregator.refresh_stale_campaigns))


@shared_task(bind=True, queue="default")
def refresh_single_campaign_stats(self, campaign_id: str) -> dict:
    from piper_dispatch.services.stats_aggregator import stats_aggregator

    async def _refresh():
        return await stats_aggregator.refresh_campaign(campaign_id)

    return run_async(_refresh)
