"""Job queue management API routes."""

from datetime import datetime, timedelta, timezone

from fastapi import APIRouter, HTTPException, Query
from sqlalchemy import func, select

from jobqueue.api.deps import DbSession, JobManagerDep
from jobqueue.config import get_settings
from jobqueue.errors import InvalidOperationError, InvalidStateTransitionError, JobNotFoundError
from jobqueue.models import Job, JobState
from jobqueue.schemas import Job as JobSchema, JobCreate, JobQueueStats, PaginatedResponse, QueueStats

router = APIRouter()


@router.get("/", response_model=PaginatedResponse[JobSchema])
async def list_jobs(
    db: DbSession,
    state: JobState | None = None,
    queue: str | None = None,
    command: str | None = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
) -> PaginatedResponse[JobSchema]:
    """List jobs with optional filtering."""
    query = select(Job)

    if state:
        query = query.where(Job.state == state)
    if queue:
        query = query.where(Job.queue == queue)
    if command:
        query = query.where(Job.command == command)

    # Get total count
    count_query = select(func.count()).select_from(query.subquery())
    total = await db.scalar(count_query) or 0

    # Apply sorting and pagination
    query = query.order_by(Job.id.desc())
    offset = (page - 1) * page_size
    query = query.offset(offset).limit(page_size)

    result = await db.execute(query)
    jobs = result.scalars().all()

    items = [JobSchema.model_validate(job) for job in jobs]
    return PaginatedResponse.create(items, total, page, page_size)


@router.get("/stats", response_model=JobQueueStats)
async def get_job_stats(db: DbSession) -> JobQueueStats:
    """Get job queue statistics."""
    now = datetime.now(timezone.utc)
    today_start = now.replace(hour=0, minute=0, second=0, microsecond=0)

    # Active jobs per queue and state
    active_query = (
        select(Job.queue, Job.state, func.count())
        .where(Job.state.in_([JobState.PENDING, JobState.RUNNING]))
        .group_by(Job.queue, Job.state)
    )
    per_queue: dict[str, QueueStats] = {}
    for queue, state, count in await db.execute(active_query):
        stats = per_queue.setdefault(
            queue, QueueStats(queue=queue, pending_count=0, running_count=0)
        )
        if state == JobState.PENDING:
            stats.pending_count = count
        else:
            stats.running_count = count

    # Finished today
    finished_query = select(func.count()).where(
        Job.state == JobState.FINISHED,
        Job.closed_at >= today_start,
    )
    finished_today = await db.scalar(finished_query) or 0

    # Failed today
    failed_query = select(func.count()).where(
        Job.state.in_([JobState.FAILED, JobState.TERMINATED, JobState.INCOMPLETE]),
        Job.closed_at >= today_start,
    )
    failed_today = await db.scalar(failed_query) or 0

    queues = sorted(per_queue.values(), key=lambda stats: stats.queue)
    return JobQueueStats(
        pending_count=sum(stats.pending_count for stats in queues),
        running_count=sum(stats.running_count for stats in queues),
        finished_today=finished_today,
        failed_today=failed_today,
        queues=queues,
    )


@router.post("/", response_model=JobSchema, status_code=201)
async def create_job(db: DbSession, manager: JobManagerDep, data: JobCreate) -> JobSchema:
    """Enqueue a new job."""
    job = Job(
        data.command,
        data.args,
        confirmed=data.confirmed,
        queue=data.queue,
        priority=data.priority,
    )
    job.max_runtime = data.max_runtime
    job.max_retries = data.max_retries
    if data.execute_after is not None:
        job.execute_after = data.execute_after

    for dependency_id in data.dependencies:
        try:
            job.add_dependency(await manager.get_job_by_id(dependency_id))
        except JobNotFoundError:
            raise HTTPException(status_code=404, detail=f"Dependency {dependency_id} not found")

    db.add(job)
    await db.flush()
    return JobSchema.model_validate(job)


@router.get("/{job_id}", response_model=JobSchema)
async def get_job(manager: JobManagerDep, job_id: int) -> JobSchema:
    """Get job details."""
    try:
        job = await manager.get_job_by_id(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")

    return JobSchema.model_validate(job)


@router.post("/{job_id}/cancel", response_model=JobSchema)
async def cancel_job(manager: JobManagerDep, job_id: int) -> JobSchema:
    """Cancel a job that has not started, along with everything waiting on it."""
    try:
        job = await manager.get_job_by_id(job_id)
        await manager.close_job(job, JobState.CANCELED)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    except (InvalidStateTransitionError, InvalidOperationError) as e:
        raise HTTPException(status_code=409, detail=str(e))

    return JobSchema.model_validate(job)


@router.post("/{job_id}/mark-incomplete", response_model=JobSchema)
async def mark_job_incomplete(manager: JobManagerDep, job_id: int) -> JobSchema:
    """Force-close a running job whose runner is gone."""
    try:
        job = await manager.mark_job_incomplete(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    except (InvalidStateTransitionError, InvalidOperationError) as e:
        raise HTTPException(status_code=409, detail=str(e))

    return JobSchema.model_validate(job)


@router.post("/recover-stale")
async def recover_stale_jobs(
    manager: JobManagerDep,
    threshold_seconds: int | None = Query(None, ge=1),
) -> dict[str, int]:
    """Close running jobs that stopped sending heartbeats."""
    threshold = threshold_seconds or get_settings().stale_job_threshold_seconds
    recovered = await manager.recover_stale_jobs(timedelta(seconds=threshold))
    return {"recovered": recovered}
