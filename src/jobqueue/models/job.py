"""Job model - a persisted command invocation and its lifecycle."""

from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any, Iterable, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    String,
    Table,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from jobqueue.errors import InvalidOperationError, InvalidStateTransitionError, flatten_exception
from jobqueue.models.base import Base, IdType, utcnow
from jobqueue.models.related_entity import RelatedEntity

DEFAULT_QUEUE = "default"
MAX_QUEUE_LENGTH = 50

PRIORITY_LOW = -5
PRIORITY_DEFAULT = 0
PRIORITY_HIGH = 5


class JobState(StrEnum):
    """Lifecycle state of a job."""

    NEW = "new"  # Created but not yet confirmed
    PENDING = "pending"  # Waiting for a runner
    CANCELED = "canceled"  # Will never run
    RUNNING = "running"  # Owned by a runner
    FINISHED = "finished"  # Exited with code 0
    FAILED = "failed"  # Exited with a non-zero code
    TERMINATED = "terminated"  # Killed after exceeding its max runtime
    INCOMPLETE = "incomplete"  # Runner lost track of the process


FINAL_STATES = frozenset(
    {
        JobState.CANCELED,
        JobState.FINISHED,
        JobState.FAILED,
        JobState.TERMINATED,
        JobState.INCOMPLETE,
    }
)
NON_SUCCESSFUL_STATES = FINAL_STATES - {JobState.FINISHED}

_TRANSITIONS: dict[JobState, tuple[JobState, ...]] = {
    JobState.NEW: (JobState.PENDING, JobState.CANCELED),
    JobState.PENDING: (JobState.RUNNING, JobState.CANCELED),
    JobState.RUNNING: (
        JobState.FINISHED,
        JobState.FAILED,
        JobState.TERMINATED,
        JobState.INCOMPLETE,
    ),
}


job_dependencies = Table(
    "job_dependencies",
    Base.metadata,
    Column("source_job_id", IdType, ForeignKey("jobs.id", ondelete="CASCADE"), primary_key=True),
    Column("dest_job_id", IdType, ForeignKey("jobs.id", ondelete="CASCADE"), primary_key=True),
)


class Job(Base):
    """A command queued for execution by a runner."""

    __tablename__ = "jobs"
    __table_args__ = (
        Index("ix_jobs_selection", "state", "priority", "id"),
        Index("ix_jobs_command", "command"),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)

    # Queue management
    state: Mapped[JobState] = mapped_column(
        Enum(
            JobState,
            native_enum=False,
            length=15,
            values_callable=lambda states: [state.value for state in states],
        ),
        nullable=False,
    )
    queue: Mapped[str] = mapped_column(String(MAX_QUEUE_LENGTH), nullable=False)
    # Stored negated so that ascending order puts the most urgent job first
    _priority: Mapped[int] = mapped_column("priority", SmallInteger, nullable=False)
    worker_name: Mapped[str | None] = mapped_column(String(50))

    # Timing
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    execute_after: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    checked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Definition
    command: Mapped[str] = mapped_column(String(255), nullable=False)
    args: Mapped[list[str]] = mapped_column(JSON, nullable=False)
    max_runtime: Mapped[int] = mapped_column(Integer, nullable=False)  # seconds, 0 = unbounded
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False)

    # Outcome
    output: Mapped[str | None] = mapped_column(Text)
    error_output: Mapped[str | None] = mapped_column(Text)
    exit_code: Mapped[int | None] = mapped_column(SmallInteger)
    stack_trace: Mapped[dict[str, Any] | None] = mapped_column(JSON)
    runtime: Mapped[int | None] = mapped_column(Integer)  # seconds
    memory_usage: Mapped[int | None] = mapped_column(BigInteger)  # peak RSS, bytes
    memory_usage_real: Mapped[int | None] = mapped_column(BigInteger)  # peak VMS, bytes

    # Retries
    original_job_id: Mapped[int | None] = mapped_column(IdType, ForeignKey("jobs.id"))
    original_job: Mapped[Optional["Job"]] = relationship(
        back_populates="retry_jobs",
        remote_side=[id],
        lazy="selectin",
        join_depth=1,
    )
    retry_jobs: Mapped[list["Job"]] = relationship(
        back_populates="original_job",
        order_by="Job.id",
        lazy="selectin",
        join_depth=1,
    )

    dependencies: Mapped[list["Job"]] = relationship(
        secondary=job_dependencies,
        primaryjoin=lambda: Job.id == job_dependencies.c.source_job_id,
        secondaryjoin=lambda: Job.id == job_dependencies.c.dest_job_id,
        order_by="Job.id",
        lazy="selectin",
        join_depth=1,
    )
    related_entities: Mapped[list[RelatedEntity]] = relationship(
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __init__(
        self,
        command: str,
        args: Iterable[str] = (),
        confirmed: bool = True,
        queue: str = DEFAULT_QUEUE,
        priority: int = PRIORITY_DEFAULT,
    ):
        if not queue or not queue.strip():
            raise ValueError("The queue name must not be empty.")
        if len(queue) > MAX_QUEUE_LENGTH:
            raise ValueError(
                f"The maximum queue length is {MAX_QUEUE_LENGTH}, but got {queue!r} "
                f"({len(queue)} characters)."
            )

        now = utcnow()
        super().__init__(
            command=command,
            args=list(args),
            state=JobState.PENDING if confirmed else JobState.NEW,
            queue=queue,
            created_at=now,
            execute_after=now - timedelta(seconds=1),
            max_runtime=0,
            max_retries=0,
            original_job=None,
            retry_jobs=[],
            dependencies=[],
            related_entities=[],
        )
        self.priority = priority

    @property
    def priority(self) -> int:
        return -self._priority

    @priority.setter
    def priority(self, value: int) -> None:
        self._priority = -int(value)

    # State machine

    def check_transition(self, new_state: JobState | str) -> JobState:
        """Validate a transition without applying it."""
        try:
            target = JobState(new_state)
        except ValueError:
            raise InvalidStateTransitionError(self, str(new_state)) from None

        if target == self.state:
            return target
        if self.state in FINAL_STATES:
            raise InvalidStateTransitionError(self, target)

        allowed = _TRANSITIONS.get(self.state)
        if allowed is None:
            raise RuntimeError(f"{self!r} is in unknown state {self.state!r}.")
        if target not in allowed:
            raise InvalidStateTransitionError(self, target, allowed)
        return target

    def set_state(self, new_state: JobState | str) -> None:
        """Move the job to a new state, stamping the matching timestamps."""
        target = self.check_transition(new_state)
        if target == self.state:
            return

        now = utcnow()
        if target == JobState.RUNNING:
            self.started_at = now
            self.checked_at = now
        elif target == JobState.CANCELED or self.state == JobState.RUNNING:
            self.closed_at = now

        self.state = target

    def checked(self) -> None:
        """Record a heartbeat from the runner supervising this job."""
        self.checked_at = utcnow()

    def is_new(self) -> bool:
        return self.state == JobState.NEW

    def is_pending(self) -> bool:
        return self.state == JobState.PENDING

    def is_canceled(self) -> bool:
        return self.state == JobState.CANCELED

    def is_running(self) -> bool:
        return self.state == JobState.RUNNING

    def is_finished(self) -> bool:
        return self.state == JobState.FINISHED

    def is_failed(self) -> bool:
        return self.state == JobState.FAILED

    def is_terminated(self) -> bool:
        return self.state == JobState.TERMINATED

    def is_incomplete(self) -> bool:
        return self.state == JobState.INCOMPLETE

    def is_in_final_state(self) -> bool:
        return self.state in FINAL_STATES

    def is_closed_non_successful(self) -> bool:
        return self.state in NON_SUCCESSFUL_STATES

    # Dependencies

    def is_startable(self) -> bool:
        """A job may start once every dependency has finished."""
        return all(dependency.state == JobState.FINISHED for dependency in self.dependencies)

    def might_have_started(self) -> bool:
        """Whether a runner could already have picked this job up."""
        if self.id is None:
            return False
        if self.state == JobState.NEW:
            return False
        if self.state == JobState.PENDING and not self.is_startable():
            return False
        return True

    def add_dependency(self, job: "Job") -> None:
        if job in self.dependencies:
            return
        if self.might_have_started():
            raise InvalidOperationError(
                "You cannot add dependencies to a job which might have been started already."
            )
        self.dependencies.append(job)

    def has_dependency(self, job: "Job") -> bool:
        return job in self.dependencies

    @property
    def dependency_ids(self) -> list[int]:
        return [dependency.id for dependency in self.dependencies]

    # Output

    def add_output(self, output: str) -> None:
        if output:
            self.output = (self.output or "") + output

    def add_error_output(self, output: str) -> None:
        if output:
            self.error_output = (self.error_output or "") + output

    def set_stack_trace(self, exc: BaseException) -> None:
        self.stack_trace = flatten_exception(exc)

    # Retries

    def is_retry_allowed(self) -> bool:
        """Whether the retry budget has room for one more attempt."""
        if self.max_retries == 0:
            return False
        return len(self.retry_jobs) < self.max_retries

    def get_original_job(self) -> "Job":
        """The job this one retries, or the job itself."""
        if self.original_job is None:
            return self
        return self.original_job

    def set_original_job(self, job: "Job") -> None:
        if self.state != JobState.PENDING:
            raise InvalidOperationError(f"{self!r} must be pending to become a retry job.")
        if self.original_job is not None:
            raise InvalidOperationError(f"{self!r} already has an original job.")
        self.original_job = job

    def add_retry_job(self, job: "Job") -> None:
        if self.state != JobState.RUNNING:
            raise InvalidOperationError("Retry jobs can only be added to running jobs.")
        job.set_original_job(self)
        # Assigning original_job already appends through the backref
        if job not in self.retry_jobs:
            self.retry_jobs.append(job)

    def is_retry_job(self) -> bool:
        return self.original_job is not None

    def is_retried(self) -> bool:
        """Whether a retry of this job is still waiting or running."""
        return any(not retry.is_in_final_state() for retry in self.retry_jobs)

    @property
    def retry_job_ids(self) -> list[int]:
        return [retry.id for retry in self.retry_jobs]

    def clone(self) -> "Job":
        """A fresh pending copy of the definition, with no run history."""
        job = Job(self.command, self.args, queue=self.queue, priority=self.priority)
        job.max_runtime = self.max_runtime
        job.max_retries = self.max_retries
        job.dependencies = list(self.dependencies)
        return job

    # Related entities

    def add_related_entity(self, related_class: str, related_id: str | int) -> None:
        related_id = str(related_id)
        for entity in self.related_entities:
            if entity.related_class == related_class and entity.related_id == related_id:
                return
        self.related_entities.append(
            RelatedEntity(related_class=related_class, related_id=related_id)
        )

    def find_related_entity(self, related_class: str) -> str | None:
        for entity in self.related_entities:
            if entity.related_class == related_class:
                return entity.related_id
        return None

    def __repr__(self) -> str:
        return f"<Job {self.id} command={self.command!r} state={self.state}>"
