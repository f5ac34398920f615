"""Pydantic schemas for API request/response validation."""

from jobqueue.schemas.common import PaginatedResponse
from jobqueue.schemas.job import Job, JobCreate, JobQueueStats, QueueStats

__all__ = [
    # Common
    "PaginatedResponse",
    # Job
    "Job",
    "JobCreate",
    "JobQueueStats",
    "QueueStats",
]
