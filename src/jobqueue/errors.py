"""Exceptions raised by the job queue."""

import traceback
from typing import TYPE_CHECKING, Any, Iterable

if TYPE_CHECKING:
    from jobqueue.models.job import Job


class JobQueueError(Exception):
    """Base exception for job queue errors."""


class InvalidStateTransitionError(JobQueueError):
    """A job was asked to move to a state its current state does not allow."""

    def __init__(self, job: "Job", new_state: str, allowed_states: Iterable[str] | None = None):
        self.job = job
        self.current_state = job.state
        self.new_state = new_state
        self.allowed_states = list(allowed_states or [])

        message = f'{job!r} cannot change from "{self.current_state}" to "{new_state}".'
        if self.allowed_states:
            allowed = ", ".join(f'"{state}"' for state in self.allowed_states)
            message += f" Allowed transitions: {allowed}."
        super().__init__(message)


class JobNotFoundError(JobQueueError):
    """No job matched the lookup."""


class InvalidOperationError(JobQueueError):
    """An operation was attempted on a job that cannot accept it."""


class InfrastructureError(JobQueueError):
    """The runner lost the ability to launch or supervise a job process."""


def flatten_exception(exc: BaseException) -> dict[str, Any]:
    """Flatten an exception into a JSON-serialisable blob for storage."""
    return {
        "class": f"{type(exc).__module__}.{type(exc).__qualname__}",
        "message": str(exc),
        "trace": traceback.format_exception(exc),
    }
