from dataclasses import asdict

from celery import shared_task

from piper_dispatch.tasks.runner import run_async


@shared_task(bind=True, queue="default")
def sweep_campaign_retention(self) -> dict:
    """Soft-delete sent campaigns older than the retention window."""
    from piper_dispatch.services.retention import retention_sweeper

    return asdict(run_async(retention_sweeper.sweep))
