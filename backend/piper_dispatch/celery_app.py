from celery import Celery
from celery.schedules import crontab
from kombu import Queue

from piper_dispatch.core.config import settings

celery_app = Celery(
    "piper_dispatch",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "piper_dispatch.tasks.delivery",
        "piper_dispatch.tasks.analytics",
        "piper_dispatch.tasks.retention",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=60 * 60,
    worker_prefetch_multiplier=1,
    task_queues=[
        Queue("default", routing_key="default"),
        Queue("sending", routing_key="sending"),
    ],
    task_default_queue="default",
    beat_schedule={
        "process-due-campaigns": {
            "task": "piper_dispatch.tasks.delivery.process_due_campaigns",
            "schedule": float(settings.scheduler_tick_seconds),
            "options": {"queue": "sending", "expires": settings.scheduler_tick_seconds},
        },
        "refresh-campaign-stats": {
            "task": "piper_dispatch.tasks.analytics.refresh_campaign_stats",
            "schedule": float(settings.stats_refresh_interval_seconds),
            "options": {"queue": "default"},
        },
        "sweep-campaign-retention": {
            "task": "piper_dispatch.tasks.retention.sweep_campaign_retention",
            "schedule": crontab(hour=2, minute=0),
            "options": {"queue": "default"},
        },
    },
)


if __name__ == "__main__":
    celery_app.start()
