"""Exception hierarchy for the job queue."""

from __future__ import annotations


class JobQueueError(Exception):
    """Base exception for job queue errors."""


class PersistenceError(JobQueueError):
    """Store unreachable or a write failed; not retried by the queue itself."""


class JobNotFoundError(JobQueueError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class ClaimConflictError(JobQueueError):
    """Another worker won the atomic claim; move on to the next candidate."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} was already claimed by another worker")
        self.job_id = job_id


class InvalidTransitionError(JobQueueError):
    def __init__(self, job_id: str, status: str, action: str, reason: str | None = None) -> None:
        message = f"Cannot {action} job {job_id} from status={status}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.job_id = job_id
        self.status = status
        self.action = action


class JobStateConflictError(JobQueueError):
    """A conditional update by the owning worker matched no row."""

    def __init__(self, job_id: str, expected_status: str) -> None:
        super().__init__(
            f"Job {job_id} is no longer in status={expected_status}; "
            "it was changed concurrently (for example by crash recovery).",
        )
        self.job_id = job_id
        self.expected_status = expected_status


class ExecutionError(RuntimeError):
    """Failure reported by a form filler while executing a job attempt."""


class TransientExecutionError(ExecutionError):
    pass


class PermanentExecutionError(ExecutionError):
    pass
