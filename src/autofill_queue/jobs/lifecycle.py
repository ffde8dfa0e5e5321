"""Pure state transitions for queued jobs.

Each transition takes a job snapshot and returns the next snapshot together
with the status the store must still observe for the write to apply, plus the
audit event to record. Nothing here touches persistence.

    pending -> processing -> completed
                          -> pending (retry, attempts < max_attempts)
                          -> failed  (attempts == max_attempts)
    processing -> pending (crash recovery, attempts unchanged)
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from uuid import uuid4

from autofill_queue.jobs.errors import InvalidTransitionError
from autofill_queue.jobs.models import (
    ErrorLogEntry,
    JobCreate,
    JobEventWrite,
    JobRecord,
    JobStatus,
)
from autofill_queue.jobs.retry import DEFAULT_RETRY_DELAY, next_retry_at


@dataclass(slots=True)
class Transition:
    """Next job state plus the guarded store mutation that produces it."""

    record: JobRecord
    expected_status: JobStatus
    event: JobEventWrite


def new_job(command: JobCreate, *, now: datetime) -> JobRecord:
    """Build a freshly enqueued job."""

    if command.max_attempts < 1:
        raise ValueError(f"max_attempts must be >= 1, got {command.max_attempts}")
    return JobRecord(
        job_id=command.job_id or str(uuid4()),
        source_reference=command.source_reference,
        payload=dict(command.payload),
        status=JobStatus.PENDING,
        created_at=now,
        attempts=0,
        max_attempts=command.max_attempts,
    )


def claim(job: JobRecord, *, now: datetime) -> Transition:
    _require_status(job, JobStatus.PENDING, "claim")
    return Transition(
        record=replace(job, status=JobStatus.PROCESSING, started_at=now, next_retry_at=None),
        expected_status=JobStatus.PENDING,
        event=JobEventWrite(
            event_type="claimed",
            status_from=JobStatus.PENDING,
            status_to=JobStatus.PROCESSING,
            details={"attempt_number": job.attempts + 1},
        ),
    )


def succeed(job: JobRecord, *, now: datetime, attempt_number: int | None = None) -> Transition:
    _require_status(job, JobStatus.PROCESSING, "complete")
    completed_attempt = attempt_number if attempt_number is not None else job.attempts + 1
    return Transition(
        record=replace(
            job,
            status=JobStatus.COMPLETED,
            completed_at=now,
            completed_attempt=completed_attempt,
            next_retry_at=None,
            final_error=None,
        ),
        expected_status=JobStatus.PROCESSING,
        event=JobEventWrite(
            event_type="completed",
            status_from=JobStatus.PROCESSING,
            status_to=JobStatus.COMPLETED,
            details={"completed_attempt": completed_attempt},
        ),
    )


def record_error(job: JobRecord, entry: ErrorLogEntry, *, now: datetime) -> Transition:
    """Append one error log and count the attempt; status is left unchanged.

    The caller must follow up with :func:`fail` or :func:`retry` depending on
    :func:`has_reached_max_attempts`.
    """

    _require_status(job, JobStatus.PROCESSING, "record error for")
    if job.attempts >= job.max_attempts:
        raise InvalidTransitionError(
            job.job_id,
            job.status.value,
            "record error for",
            f"attempts already at max_attempts={job.max_attempts}",
        )
    return Transition(
        record=replace(
            job,
            attempts=job.attempts + 1,
            error_logs=(*job.error_logs, entry),
            last_error=entry.error_message,
            last_error_timestamp=entry.timestamp,
            last_attempt_at=now,
        ),
        expected_status=JobStatus.PROCESSING,
        event=JobEventWrite(
            event_type="error_recorded",
            status_from=JobStatus.PROCESSING,
            status_to=JobStatus.PROCESSING,
            details={
                "attempt_number": entry.attempt_number,
                "attempts": job.attempts + 1,
                "max_attempts": job.max_attempts,
                "error_type": entry.error_type,
                "error_message": entry.error_message,
            },
        ),
    )


def has_reached_max_attempts(job: JobRecord) -> bool:
    return job.attempts >= job.max_attempts


def fail(job: JobRecord, entry: ErrorLogEntry, *, now: datetime) -> Transition:
    _require_status(job, JobStatus.PROCESSING, "fail")
    if not has_reached_max_attempts(job):
        raise InvalidTransitionError(
            job.job_id,
            job.status.value,
            "fail",
            f"only {job.attempts}/{job.max_attempts} attempts used; schedule a retry instead",
        )
    if not job.error_logs or job.error_logs[-1] != entry:
        raise InvalidTransitionError(
            job.job_id,
            job.status.value,
            "fail",
            "the final error must be the most recently recorded error log",
        )
    return Transition(
        record=replace(job, status=JobStatus.FAILED, failed_at=now, final_error=entry),
        expected_status=JobStatus.PROCESSING,
        event=JobEventWrite(
            event_type="failed",
            status_from=JobStatus.PROCESSING,
            status_to=JobStatus.FAILED,
            details={
                "attempts": job.attempts,
                "max_attempts": job.max_attempts,
                "error_message": entry.error_message,
            },
        ),
    )


def retry(
    job: JobRecord,
    *,
    now: datetime,
    delay: timedelta = DEFAULT_RETRY_DELAY,
) -> Transition:
    _require_status(job, JobStatus.PROCESSING, "retry")
    if has_reached_max_attempts(job):
        raise InvalidTransitionError(
            job.job_id,
            job.status.value,
            "retry",
            f"attempts exhausted ({job.attempts}/{job.max_attempts})",
        )
    if job.attempts == 0:
        raise InvalidTransitionError(
            job.job_id,
            job.status.value,
            "retry",
            "no error has been recorded for the current attempt",
        )
    retry_at = next_retry_at(now, delay)
    return Transition(
        record=replace(job, status=JobStatus.PENDING, next_retry_at=retry_at),
        expected_status=JobStatus.PROCESSING,
        event=JobEventWrite(
            event_type="retry_scheduled",
            status_from=JobStatus.PROCESSING,
            status_to=JobStatus.PENDING,
            details={
                "next_retry_at": retry_at.isoformat(),
                "attempts": job.attempts,
                "max_attempts": job.max_attempts,
            },
        ),
    )


def recover(job: JobRecord, *, now: datetime) -> Transition:
    """Return an orphaned in-flight job to the queue without counting an attempt."""

    _require_status(job, JobStatus.PROCESSING, "recover")
    return Transition(
        record=replace(job, status=JobStatus.PENDING, recovered_at=now),
        expected_status=JobStatus.PROCESSING,
        event=JobEventWrite(
            event_type="recovered",
            status_from=JobStatus.PROCESSING,
            status_to=JobStatus.PENDING,
            details={"attempts": job.attempts},
        ),
    )


def _require_status(job: JobRecord, expected: JobStatus, action: str) -> None:
    if job.status != expected:
        raise InvalidTransitionError(job.job_id, job.status.value, action)
