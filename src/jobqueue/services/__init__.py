"""Business logic services."""

from jobqueue.services.cron import CronJobTracker
from jobqueue.services.job_manager import JobManager, StateChangeCallback
from jobqueue.services.retry import ExponentialRetryScheduler, RetryScheduler

__all__ = [
    "CronJobTracker",
    "ExponentialRetryScheduler",
    "JobManager",
    "RetryScheduler",
    "StateChangeCallback",
]
