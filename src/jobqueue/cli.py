"""Command-line interface for enqueuing, running and repairing jobs."""

import asyncio
import logging
import sys
from datetime import timedelta
from typing import Any, Coroutine

import click

from jobqueue.config import get_settings
from jobqueue.db.session import get_engine, get_sessionmaker, init_db
from jobqueue.errors import InvalidOperationError, InvalidStateTransitionError, JobNotFoundError
from jobqueue.models import PRIORITY_DEFAULT, Job
from jobqueue.services import ExponentialRetryScheduler, JobManager
from jobqueue.worker.runner import JobRunner


def _run(coro: Coroutine[Any, Any, Any]) -> Any:
    """Run a coroutine and release pooled connections before the loop closes."""

    async def wrapper() -> Any:
        try:
            return await coro
        finally:
            await get_engine().dispose()

    return asyncio.run(wrapper())


def _manager(session) -> JobManager:
    settings = get_settings()
    return JobManager(
        session,
        retry_scheduler=ExponentialRetryScheduler(
            base_delay_seconds=settings.retry_base_delay_seconds,
            max_delay_seconds=settings.retry_max_delay_seconds,
        ),
    )


@click.group()
@click.option("--log-level", default=None, help="Logging level (defaults to LOG_LEVEL)")
def cli(log_level: str | None) -> None:
    """Persistent command job queue."""
    logging.basicConfig(
        level=(log_level or get_settings().log_level).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@cli.command("init-db")
def init_db_command() -> None:
    """Create the job tables."""
    _run(init_db())
    click.echo("Database initialised.")


@cli.command()
@click.argument("command")
@click.argument("args", nargs=-1)
@click.option("--queue", default=None, help="Queue name (default: default)")
@click.option("--priority", default=PRIORITY_DEFAULT, type=int, help="Higher runs first")
@click.option("--max-retries", default=0, type=int, help="Automatic retries after a failure")
@click.option("--max-runtime", default=0, type=int, help="Seconds before the job is terminated (0 = unbounded)")
@click.option("--depends-on", "depends_on", multiple=True, type=int, help="Id of a job that must finish first")
def enqueue(
    command: str,
    args: tuple[str, ...],
    queue: str | None,
    priority: int,
    max_retries: int,
    max_runtime: int,
    depends_on: tuple[int, ...],
) -> None:
    """Add COMMAND with ARGS to the queue."""

    async def _enqueue() -> Job:
        async with get_sessionmaker()() as session:
            manager = _manager(session)
            job = Job(command, args, queue=queue or "default", priority=priority)
            job.max_retries = max_retries
            job.max_runtime = max_runtime
            for dependency_id in depends_on:
                job.add_dependency(await manager.get_job_by_id(dependency_id))
            session.add(job)
            await session.commit()
            return job

    try:
        job = _run(_enqueue())
    except (JobNotFoundError, ValueError) as e:
        click.echo(f"Could not enqueue job: {e}", err=True)
        sys.exit(1)
    click.echo(f"Enqueued job {job.id} on queue {job.queue!r}.")


@cli.command()
@click.option("--worker-name", default=None, help="Name recorded on claimed jobs (default: hostname-pid)")
@click.option("--max-runtime", default=None, type=int, help="Seconds before the runner stops taking jobs")
@click.option("--max-concurrent-jobs", default=None, type=int, help="Jobs run in parallel")
@click.option("--idle-time", default=None, type=float, help="Seconds to sleep between polls")
@click.option("--queue", "queues", multiple=True, help="Only run jobs from this queue (repeatable)")
def run(
    worker_name: str | None,
    max_runtime: int | None,
    max_concurrent_jobs: int | None,
    idle_time: float | None,
    queues: tuple[str, ...],
) -> None:
    """Run queued jobs until stopped."""
    runner = JobRunner(
        get_sessionmaker(),
        worker_name=worker_name,
        max_runtime=max_runtime,
        restricted_queues=queues,
        max_concurrent_jobs=max_concurrent_jobs,
        idle_time=idle_time,
    )
    _run(runner.run())


@cli.command("mark-incomplete")
@click.argument("job_id", type=int)
def mark_incomplete(job_id: int) -> None:
    """Close a job whose runner died as incomplete."""

    async def _mark() -> Job:
        async with get_sessionmaker()() as session:
            return await _manager(session).mark_job_incomplete(job_id)

    try:
        job = _run(_mark())
    except JobNotFoundError:
        click.echo("Job was not found.", err=True)
        sys.exit(1)
    except (InvalidStateTransitionError, InvalidOperationError) as e:
        click.echo(str(e), err=True)
        sys.exit(1)
    click.echo(f"Job {job.id} is now {job.state}.")


@cli.command("recover-stale")
@click.option("--threshold-seconds", default=None, type=int, help="Heartbeat age that counts as stale")
def recover_stale(threshold_seconds: int | None) -> None:
    """Mark running jobs without a recent heartbeat as incomplete."""
    threshold = timedelta(seconds=threshold_seconds or get_settings().stale_job_threshold_seconds)

    async def _recover() -> int:
        async with get_sessionmaker()() as session:
            return await _manager(session).recover_stale_jobs(threshold)

    recovered = _run(_recover())
    click.echo(f"Recovered {recovered} stale job(s).")


if __name__ == "__main__":
    cli()
