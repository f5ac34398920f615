"""Worker process that runs queued jobs as supervised child processes."""

import asyncio
import logging
import os
import signal
import socket
from collections import Counter
from dataclasses import dataclass, field
from time import monotonic
from typing import Iterable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobqueue.config import Settings, get_settings
from jobqueue.db.session import get_sessionmaker
from jobqueue.errors import InfrastructureError
from jobqueue.models import Job, JobState
from jobqueue.services.job_manager import JobManager, StateChangeCallback
from jobqueue.services.retry import ExponentialRetryScheduler, RetryScheduler
from jobqueue.worker.process import JobProcess

logger = logging.getLogger(__name__)


@dataclass
class RunningJob:
    """A job this runner has started and is supervising."""

    job: Job
    process: JobProcess
    last_checked: float = field(default_factory=monotonic)


def default_worker_name() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"[:50]


class JobRunner:
    """
    Polls the queue, starts startable jobs and supervises them until they exit.

    Concurrency is bounded globally and per queue. A shutdown request stops
    new starts and waits for in-flight jobs to exit.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        worker_name: str | None = None,
        max_runtime: float | None = None,
        restricted_queues: Iterable[str] | None = None,
        max_concurrent_jobs: int | None = None,
        queue_options: dict[str, int] | None = None,
        idle_time: float | None = None,
        check_interval: float | None = None,
        command_prefix: Iterable[str] | None = None,
        retry_scheduler: RetryScheduler | None = None,
        on_state_change: StateChangeCallback | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.worker_name = worker_name or self.settings.worker_name or default_worker_name()
        self.max_runtime = (
            self.settings.worker_max_runtime_seconds if max_runtime is None else max_runtime
        )
        self.restricted_queues = list(restricted_queues or [])
        self.max_concurrent_jobs = max_concurrent_jobs or self.settings.worker_max_concurrent_jobs
        self.queue_options = {**self.settings.queue_max_concurrent_jobs, **(queue_options or {})}
        self.idle_time = self.settings.worker_idle_time_seconds if idle_time is None else idle_time
        self.check_interval = (
            self.settings.worker_check_interval_seconds if check_interval is None else check_interval
        )
        self.command_prefix = list(
            self.settings.worker_command_prefix if command_prefix is None else command_prefix
        )
        self.retry_scheduler = retry_scheduler or ExponentialRetryScheduler(
            base_delay_seconds=self.settings.retry_base_delay_seconds,
            max_delay_seconds=self.settings.retry_max_delay_seconds,
        )
        self.on_state_change = on_state_change

        self._shutdown = False
        self._running: list[RunningJob] = []
        self._manager: JobManager | None = None

    @property
    def running_jobs(self) -> list[Job]:
        return [running.job for running in self._running]

    def request_shutdown(self) -> None:
        """Stop starting jobs and exit once the running ones are done."""
        if not self._shutdown:
            logger.info("Shutdown requested, waiting for %d running job(s)", len(self._running))
        self._shutdown = True

    async def run(self) -> None:
        """Main runner loop."""
        logger.info(
            "Runner %s starting (max concurrent jobs: %d, idle time: %ss, queues: %s)",
            self.worker_name,
            self.max_concurrent_jobs,
            self.idle_time,
            ", ".join(self.restricted_queues) or "all",
        )

        # Set up signal handlers for graceful shutdown
        loop = asyncio.get_running_loop()
        signals = (signal.SIGTERM, signal.SIGINT)
        for sig in signals:
            loop.add_signal_handler(sig, self.request_shutdown)

        try:
            async with self.session_factory() as session:
                self._manager = JobManager(
                    session,
                    on_state_change=self.on_state_change,
                    retry_scheduler=self.retry_scheduler,
                )
                try:
                    await self._run_loop()
                except Exception:
                    logger.exception("Runner %s failed, abandoning running jobs", self.worker_name)
                    await self._abandon_running_jobs()
                    raise
        finally:
            for sig in signals:
                loop.remove_signal_handler(sig)
            self._manager = None

        logger.info("Runner %s shut down", self.worker_name)

    async def _run_loop(self) -> None:
        started = monotonic()
        while not self._shutdown:
            if self.max_runtime > 0 and monotonic() - started > self.max_runtime:
                logger.info("Runner %s reached its max runtime", self.worker_name)
                break

            await self._check_running_jobs()
            await self._start_jobs()
            await asyncio.sleep(self.idle_time)

        while self._running:
            await self._check_running_jobs()
            if self._running:
                await asyncio.sleep(self.idle_time)

    # Starting

    def max_concurrent_jobs_for(self, queue: str) -> int:
        """Concurrency limit for a single queue."""
        return self.queue_options.get(queue, self.settings.queue_default_max_concurrent_jobs)

    def _full_queues(self) -> list[str]:
        counts = Counter(running.job.queue for running in self._running)
        return [
            queue for queue, count in counts.items() if count >= self.max_concurrent_jobs_for(queue)
        ]

    async def _start_jobs(self) -> None:
        # Jobs blocked on dependencies get another look on the next tick
        excluded_ids: list[int] = []
        while not self._shutdown and len(self._running) < self.max_concurrent_jobs:
            job = await self._manager.find_startable_job(
                self.worker_name,
                excluded_ids,
                excluded_queues=self._full_queues(),
                restricted_queues=self.restricted_queues,
            )
            if job is None:
                return
            await self._start_job(job)

    async def _start_job(self, job: Job) -> None:
        if not await self._manager.start_job(job):
            logger.info("%r was closed before it could start, skipping", job)
            return

        argv = [*self.command_prefix, job.command, *job.args]
        try:
            process = await JobProcess.spawn(argv)
        except InfrastructureError as e:
            logger.error("Could not start %r: %s", job, e)
            job.set_stack_trace(e)
            await self._manager.close_job(job, JobState.INCOMPLETE)
            return

        self._running.append(RunningJob(job=job, process=process))
        logger.info("Started %r (pid %d)", job, process.pid)

    # Supervision

    async def _check_running_jobs(self) -> None:
        for running in list(self._running):
            try:
                await self._check_running_job(running)
            except InfrastructureError as e:
                logger.error("Lost track of %r: %s", running.job, e)
                self._running.remove(running)
                running.job.set_stack_trace(e)
                await self._manager.close_job(running.job, JobState.INCOMPLETE)

    async def _check_running_job(self, running: RunningJob) -> None:
        job, process = running.job, running.process

        try:
            alive = process.is_alive()
        except OSError as e:
            raise InfrastructureError(f"Could not poll process {process.pid}: {e}") from e

        if alive:
            if job.max_runtime > 0 and process.wall_clock_time > job.max_runtime:
                await process.terminate(self.settings.worker_terminate_grace_seconds)
                self._record_result(job, process)
                self._running.remove(running)
                logger.warning("%r exceeded its max runtime of %ds, terminated", job, job.max_runtime)
                await self._manager.close_job(job, JobState.TERMINATED)
                return

            job.add_output(process.read_output())
            job.add_error_output(process.read_error_output())
            if monotonic() - running.last_checked >= self.check_interval:
                job.checked()
                running.last_checked = monotonic()
                await self._manager.session.commit()
            return

        await process.wait()
        self._record_result(job, process)
        self._running.remove(running)

        logger.info("%r finished with exit code %d", job, process.exit_code)
        final_state = JobState.FINISHED if process.exit_code == 0 else JobState.FAILED
        await self._manager.close_job(job, final_state)

    @staticmethod
    def _record_result(job: Job, process: JobProcess) -> None:
        job.add_output(process.read_output())
        job.add_error_output(process.read_error_output())
        job.exit_code = process.exit_code
        job.runtime = round(process.wall_clock_time)
        job.memory_usage = process.peak_memory
        job.memory_usage_real = process.peak_memory_real

    async def _abandon_running_jobs(self) -> None:
        """Stop every child and mark its job incomplete through a fresh session."""
        running, self._running = self._running, []
        for entry in running:
            await entry.process.terminate(self.settings.worker_terminate_grace_seconds)

        if not running:
            return

        async with self.session_factory() as session:
            manager = JobManager(session, retry_scheduler=self.retry_scheduler)
            for entry in running:
                try:
                    job = await manager.get_job_by_id(entry.job.id)
                    if not job.is_in_final_state():
                        await manager.close_job(job, JobState.INCOMPLETE)
                except Exception:
                    logger.exception("Could not mark %r incomplete", entry.job)


async def main() -> None:
    """Entry point for the runner process."""
    runner = JobRunner(get_sessionmaker())
    await runner.run()


if __name__ == "__main__":
    asyncio.run(main())
