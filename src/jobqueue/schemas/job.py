"""Job schemas for API request/response."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from jobqueue.models.job import DEFAULT_QUEUE, MAX_QUEUE_LENGTH, PRIORITY_DEFAULT, JobState


class JobBase(BaseModel):
    """Base job fields."""

    command: str = Field(min_length=1, max_length=255)
    args: list[str] = Field(default_factory=list)
    queue: str = Field(default=DEFAULT_QUEUE, min_length=1, max_length=MAX_QUEUE_LENGTH)
    priority: int = Field(default=PRIORITY_DEFAULT, ge=-1000, le=1000)
    max_runtime: int = Field(default=0, ge=0)
    max_retries: int = Field(default=0, ge=0, le=100)


class JobCreate(JobBase):
    """Request body for enqueuing a job."""

    confirmed: bool = True
    dependencies: list[int] = Field(default_factory=list)
    execute_after: datetime | None = None


class Job(JobBase):
    """Job response model."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    state: JobState
    worker_name: str | None = None
    created_at: datetime
    execute_after: datetime
    started_at: datetime | None = None
    checked_at: datetime | None = None
    closed_at: datetime | None = None
    output: str | None = None
    error_output: str | None = None
    exit_code: int | None = None
    stack_trace: dict[str, Any] | None = None
    runtime: int | None = None
    memory_usage: int | None = None
    memory_usage_real: int | None = None
    original_job_id: int | None = None
    dependency_ids: list[int] = Field(default_factory=list)
    retry_job_ids: list[int] = Field(default_factory=list)


class QueueStats(BaseModel):
    """Per-queue counts of active jobs."""

    queue: str
    pending_count: int
    running_count: int


class JobQueueStats(BaseModel):
    """Overall queue statistics."""

    pending_count: int
    running_count: int
    finished_today: int
    failed_today: int
    queues: list[QueueStats] = Field(default_factory=list)
