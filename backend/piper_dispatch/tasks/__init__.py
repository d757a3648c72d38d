from piper_dispatch.tasks.delivery import process_due_campaigns
from piper_dispatch.tasks.analytics import refresh_campaign_stats, refresh_single_campaign_stats
from piper_dispatch.tasks.retention import sweep_campaign_retention

__all__ = [
    "process_due_campaigns",
    "refresh_campaign_stats",
    "refresh_single_campaign_stats",
    "sweep_campaign_retention",
]
