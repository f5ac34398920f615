"""Job manager - selection, claiming and closing of queued jobs."""

import logging
from collections import deque
from datetime import timedelta
from typing import Awaitable, Callable, Iterable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from jobqueue.errors import InvalidOperationError, InvalidStateTransitionError, JobNotFoundError
from jobqueue.models import Job, JobState, RelatedEntity, job_dependencies
from jobqueue.models.base import utcnow
from jobqueue.services.retry import ExponentialRetryScheduler, RetryScheduler

logger = logging.getLogger(__name__)

# Called with the job and the state it is being closed with
StateChangeCallback = Callable[[Job, JobState], Awaitable[None]]

CLOSING_STATES = frozenset(
    {
        JobState.CANCELED,
        JobState.FINISHED,
        JobState.FAILED,
        JobState.TERMINATED,
        JobState.INCOMPLETE,
    }
)


async def load_relations(job: Job, *names: str) -> None:
    """Make sure the given relationships are loaded without lazy IO."""
    for name in names:
        await getattr(job.awaitable_attrs, name)


class JobManager:
    """Repository and lifecycle operations for jobs, bound to one session."""

    def __init__(
        self,
        session: AsyncSession,
        on_state_change: StateChangeCallback | None = None,
        retry_scheduler: RetryScheduler | None = None,
    ):
        self.session = session
        self.on_state_change = on_state_change
        self.retry_scheduler = retry_scheduler or ExponentialRetryScheduler()

    # Lookups

    async def get_job_by_id(self, job_id: int) -> Job:
        job = await self.session.get(Job, job_id)
        if job is None:
            raise JobNotFoundError(f"Found no job with id {job_id}.")
        return job

    async def get_job(
        self,
        command: str,
        args: Iterable[str] = (),
        queue: str | None = None,
    ) -> Job:
        """Get the oldest job for a command/args pair."""
        job = await self._find_job(command, args, queue)
        if job is None:
            raise JobNotFoundError(f"Found no job for command {command!r} with args {list(args)!r}.")
        return job

    async def _find_job(
        self,
        command: str,
        args: Iterable[str] = (),
        queue: str | None = None,
    ) -> Job | None:
        args = list(args)
        query = select(Job).where(Job.command == command).order_by(Job.id.asc())
        if queue is not None:
            query = query.where(Job.queue == queue)

        # JSON columns are not comparable on every backend
        result = await self.session.execute(query)
        for job in result.scalars():
            if job.args == args:
                return job
        return None

    async def get_or_create_if_not_exists(self, command: str, args: Iterable[str] = ()) -> Job:
        """
        Get the job for a command/args pair, creating it when missing.

        The new row is inserted unconfirmed and only promoted to pending if it
        turns out to be the oldest match, so concurrent callers converge on a
        single job.
        """
        args = list(args)
        job = await self._find_job(command, args)
        if job is not None:
            return job

        job = Job(command, args, confirmed=False)
        self.session.add(job)
        await self.session.commit()

        first_job = await self._find_job(command, args)
        if first_job is job:
            job.set_state(JobState.PENDING)
            await self.session.commit()
            return job

        await self.session.delete(job)
        await self.session.commit()
        return first_job

    async def find_job_for_related_entity(
        self,
        command: str,
        related_class: str,
        related_id: str | int,
    ) -> Job | None:
        query = (
            select(Job)
            .join(RelatedEntity, RelatedEntity.job_id == Job.id)
            .where(
                Job.command == command,
                RelatedEntity.related_class == related_class,
                RelatedEntity.related_id == str(related_id),
            )
            .order_by(Job.id.asc())
            .limit(1)
        )
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def find_incoming_dependencies(self, job: Job) -> list[Job]:
        """Unstarted jobs that are waiting on the given job."""
        if job.id is None:
            return []

        query = (
            select(Job)
            .join(job_dependencies, job_dependencies.c.source_job_id == Job.id)
            .where(
                job_dependencies.c.dest_job_id == job.id,
                Job.state.in_([JobState.NEW, JobState.PENDING]),
            )
            .order_by(Job.id.asc())
        )
        result = await self.session.execute(query)
        return list(result.scalars())

    # Selection

    async def find_pending_job(
        self,
        excluded_ids: Iterable[int] | None = None,
        excluded_queues: Iterable[str] | None = None,
        restricted_queues: Iterable[str] | None = None,
        excluded_commands: Iterable[str] | None = None,
    ) -> Job | None:
        """The most urgent unclaimed pending job, ignoring dependencies."""
        query = (
            select(Job)
            .where(
                Job.state == JobState.PENDING,
                Job.worker_name.is_(None),
                Job.execute_after < utcnow(),
            )
            .order_by(Job._priority.asc(), Job.id.asc())
            .limit(1)
            # Other runners may have changed rows this session already holds
            .execution_options(populate_existing=True)
        )

        excluded_ids = list(excluded_ids or [])
        if excluded_ids:
            query = query.where(Job.id.not_in(excluded_ids))
        excluded_queues = list(excluded_queues or [])
        if excluded_queues:
            query = query.where(Job.queue.not_in(excluded_queues))
        restricted_queues = list(restricted_queues or [])
        if restricted_queues:
            query = query.where(Job.queue.in_(restricted_queues))
        excluded_commands = list(excluded_commands or [])
        if excluded_commands:
            query = query.where(Job.command.not_in(excluded_commands))

        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def find_startable_job(
        self,
        worker_name: str,
        excluded_ids: list[int] | None = None,
        excluded_queues: Iterable[str] | None = None,
        restricted_queues: Iterable[str] | None = None,
        excluded_commands: Iterable[str] | None = None,
    ) -> Job | None:
        """
        Find and claim the next job whose dependencies have all finished.

        Candidates that are blocked or lost to another worker are appended to
        ``excluded_ids`` so callers can carry the exclusions across calls.
        """
        if excluded_ids is None:
            excluded_ids = []
        excluded_queues = list(excluded_queues or [])
        restricted_queues = list(restricted_queues or [])
        excluded_commands = list(excluded_commands or [])

        while True:
            job = await self.find_pending_job(
                excluded_ids, excluded_queues, restricted_queues, excluded_commands
            )
            if job is None:
                return None

            await load_relations(job, "dependencies")
            if job.is_startable() and await self.acquire_lock(worker_name, job):
                return job

            excluded_ids.append(job.id)
            # Nothing else in this session needs the rejected candidate
            self.session.expunge(job)

    async def acquire_lock(self, worker_name: str, job: Job) -> bool:
        """Atomically claim a pending job for a worker."""
        query = (
            update(Job)
            .where(
                Job.id == job.id,
                Job.worker_name.is_(None),
                Job.state == JobState.PENDING,
            )
            .values(worker_name=worker_name)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(query)
        await self.session.commit()

        if result.rowcount > 0:
            set_committed_value(job, "worker_name", worker_name)
            return True
        return False

    async def start_job(self, job: Job) -> bool:
        """
        Move a claimed job to running, unless it was closed since the claim.

        The write only applies while the stored row is still pending and owned
        by the job's worker. Returns False, with the job refreshed from the
        store, when someone else got there first.
        """
        job.check_transition(JobState.RUNNING)
        now = utcnow()
        query = (
            update(Job)
            .where(
                Job.id == job.id,
                Job.worker_name == job.worker_name,
                Job.state == JobState.PENDING,
            )
            .values(state=JobState.RUNNING, started_at=now, checked_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(query)
        await self.session.commit()

        if result.rowcount == 0:
            await self.session.refresh(job)
            return False

        set_committed_value(job, "state", JobState.RUNNING)
        set_committed_value(job, "started_at", now)
        set_committed_value(job, "checked_at", now)
        return True

    # Closing

    async def close_job(self, job: Job, final_state: JobState | str) -> None:
        """
        Move a job into a final state and apply the follow-ups.

        Failures of a job with retry budget left spawn a retry instead, and
        non-successful outcomes cancel everything waiting on the job.
        """
        try:
            target = JobState(final_state)
        except ValueError:
            raise InvalidStateTransitionError(job, str(final_state)) from None

        if job.is_in_final_state():
            return
        if target not in CLOSING_STATES:
            raise InvalidStateTransitionError(job, target, CLOSING_STATES)
        job.check_transition(target)

        try:
            visited: set[Job] = set()
            blocked: deque[Job] = deque()
            await self._close_job(job, target, visited, blocked)

            while blocked:
                blocker = blocked.popleft()
                for dependent in await self.find_incoming_dependencies(blocker):
                    logger.info("Canceling %r, it depends on %r", dependent, blocker)
                    await self._close_job(dependent, JobState.CANCELED, visited, blocked)

            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

    async def _close_job(
        self,
        job: Job,
        final_state: JobState,
        visited: set[Job],
        blocked: deque[Job],
    ) -> None:
        if job in visited or job.is_in_final_state():
            return
        visited.add(job)

        await load_relations(job, "original_job", "retry_jobs", "dependencies")
        # An original that already has retries reports through them
        should_notify = job.is_retry_job() or not job.retry_jobs

        if final_state == JobState.CANCELED:
            job.set_state(JobState.CANCELED)
            await self._notify(job, final_state, should_notify)
            if job.is_retry_job():
                # The original has already run, so it cannot be canceled anymore
                original = job.original_job
                await load_relations(original, "retry_jobs")
                if not original.is_in_final_state():
                    visited.add(original)
                    original.set_state(JobState.FAILED)
                    blocked.append(original)
                return
            blocked.append(job)
            return

        if final_state in (JobState.FAILED, JobState.TERMINATED, JobState.INCOMPLETE):
            if job.is_retry_job():
                job.set_state(final_state)
                await self._notify(job, final_state, should_notify)
                await self._close_job(job.original_job, final_state, visited, blocked)
                return

            if job.is_retry_allowed():
                retry_job = job.clone()
                job.add_retry_job(retry_job)
                retry_job.execute_after = utcnow() + self.retry_scheduler(len(job.retry_jobs))
                self.session.add(retry_job)
                logger.info(
                    "Scheduled retry %d/%d of %r after %s",
                    len(job.retry_jobs),
                    job.max_retries,
                    job,
                    final_state,
                )
                await self._notify(job, final_state, should_notify)
                return

            job.set_state(final_state)
            await self._notify(job, final_state, should_notify)
            blocked.append(job)
            return

        if final_state == JobState.FINISHED:
            job.set_state(JobState.FINISHED)
            await self._notify(job, final_state, should_notify)
            if job.is_retry_job():
                original = job.original_job
                original.exit_code = job.exit_code
                await self._close_job(original, JobState.FINISHED, visited, blocked)
            return

        raise RuntimeError(f"Cannot close {job!r} with state {final_state!r}.")

    async def _notify(self, job: Job, state: JobState, should_notify: bool) -> None:
        if should_notify and self.on_state_change is not None:
            await self.on_state_change(job, state)

    # Maintenance

    async def mark_job_incomplete(self, job_id: int) -> Job:
        """Force-close a job whose runner went away."""
        job = await self.get_job_by_id(job_id)
        await load_relations(job, "retry_jobs")
        if not job.is_in_final_state() and job.is_retried():
            # The outcome belongs to the outstanding retry
            raise InvalidOperationError(
                f"{job!r} is waiting for its retry {job.retry_jobs[-1]!r}, close that job instead."
            )
        await self.close_job(job, JobState.INCOMPLETE)
        return job

    async def find_stale_jobs(self, threshold: timedelta) -> list[Job]:
        """
        Running jobs whose heartbeat is older than the threshold.

        Originals waiting for a retry are not supervised by any runner, so
        they are never stale.
        """
        query = (
            select(Job)
            .where(
                Job.state == JobState.RUNNING,
                Job.checked_at < utcnow() - threshold,
            )
            .order_by(Job.id.asc())
        )
        result = await self.session.execute(query)
        stale = []
        for job in result.scalars():
            await load_relations(job, "retry_jobs")
            if not job.is_retried():
                stale.append(job)
        return stale

    async def recover_stale_jobs(self, threshold: timedelta) -> int:
        """
        Close abandoned running jobs as incomplete.

        Returns the number of jobs recovered.
        """
        recovered = 0
        for job in await self.find_stale_jobs(threshold):
            # Earlier closes may have cascaded into this one
            if job.is_in_final_state() or job.is_retried():
                continue
            logger.warning("Recovering stale %r (last checked %s)", job, job.checked_at)
            await self.close_job(job, JobState.INCOMPLETE)
            recovered += 1
        return recovered
