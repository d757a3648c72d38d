"""
Celery tasks that drive campaign delivery.
"""

import logging
from dataclasses import asdict

from celery import shared_task

from piper_dispatch.tasks.runner import run_async

logger = logging.getLogger(__name__)


@shared_task(bind=True, queue="sending")
def process_due_campaigns(self) -> dict:
    """Scheduler tick: send every campaign whose scheduled time has passed."""
    from piper_dispatch.services.delivery_scheduler import delivery_scheduler

    result = run_async(delivery_scheduler.tick)
    if not result.skipped:
        logger.info(
            "Delivery tick finished: %d sent, %d failed",
            result.processed, result.failed,
        )
    return {
        "skipped": result.skipped,
        "processed": result.processed,
        "failed": result.failed,
        "results": [asdict(r) for r in result.results],
    }

