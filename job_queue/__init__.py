"""
Job Queue — Deferred follow-up actions and the periodic tasks that drive them.

- FollowUpScheduler holds FollowUpActions and drains due ones on tick()
- PeriodicTask runs the ticker (every 5 minutes) and cache pruning (daily)
"""
from job_queue.background import PeriodicTask
from job_queue.followup_scheduler import (
    DEFAULT_MAX_RETRIES, DEFAULT_RETRY_DELAY, FollowUpScheduler,
)

__all__ = ["PeriodicTask", "FollowUpScheduler", "DEFAULT_MAX_RETRIES", "DEFAULT_RETRY_DELAY"]
