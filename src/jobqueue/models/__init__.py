"""SQLAlchemy models."""

from jobqueue.models.base import Base
from jobqueue.models.cron_job import CronJob
from jobqueue.models.job import (
    DEFAULT_QUEUE,
    MAX_QUEUE_LENGTH,
    PRIORITY_DEFAULT,
    PRIORITY_HIGH,
    PRIORITY_LOW,
    Job,
    JobState,
    job_dependencies,
)
from jobqueue.models.related_entity import RelatedEntity, related_entity_key

__all__ = [
    "Base",
    "CronJob",
    "DEFAULT_QUEUE",
    "MAX_QUEUE_LENGTH",
    "PRIORITY_DEFAULT",
    "PRIORITY_HIGH",
    "PRIORITY_LOW",
    "Job",
    "JobState",
    "job_dependencies",
    "RelatedEntity",
    "related_entity_key",
]
