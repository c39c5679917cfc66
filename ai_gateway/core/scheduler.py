"""
Scheduled trial expiration.

Runs the trial sweep on a fixed interval (hourly by default).
"""

from apscheduler.schedulers.background import BackgroundScheduler

from ai_gateway.core.subscription import SubscriptionLifecycle
from ai_gateway.logging_config import get_logger

logger = get_logger(__name__)

SWEEP_JOB_ID = "expire_trials"


class TrialExpirationTask:
    """Demotes expired trials when run."""

    def __init__(self, lifecycle: SubscriptionLifecycle):
        self.lifecycle = lifecycle

    def run_once(self) -> int:
        """Run one sweep and return the number of demoted subscriptions."""
        logger.info("Checking for expired trial subscriptions")
        count = self.lifecycle.sweep_expired_trials()
        if count > 0:
            logger.info("Downgraded expired trials to free plan", count=count)
        return count


def build_scheduler(task: TrialExpirationTask, interval_seconds: int = 3600) -> BackgroundScheduler:
    """Create a scheduler that runs the sweep every interval_seconds.

    Overlapping runs are skipped and missed runs coalesce into one, so a
    slow sweep never piles up. The scheduler is returned unstarted.

    Args:
        task: Sweep to run
        interval_seconds: Seconds between runs

    Returns:
        Configured, unstarted BackgroundScheduler
    """
    if interval_seconds <= 0:
        raise ValueError("interval_seconds must be > 0")

    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        task.run_once,
        "interval",
        seconds=interval_seconds,
        id=SWEEP_JOB_ID,
        max_instances=1,
        coalesce=True,
        replace_existing=True
    )
    return scheduler
