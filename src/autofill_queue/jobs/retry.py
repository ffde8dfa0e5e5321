"""Retry scheduling for failed attempts.

Retry policy is attempt-count only: every recorded error is retried after a
fixed delay until ``max_attempts`` is reached, whatever its ``error_type``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from autofill_queue.jobs.models import JobRecord, JobStatus

DEFAULT_RETRY_DELAY = timedelta(milliseconds=60_000)


def next_retry_at(now: datetime, delay: timedelta = DEFAULT_RETRY_DELAY) -> datetime:
    """Earliest time a job failed at ``now`` becomes eligible again."""

    if delay < timedelta(0):
        raise ValueError(f"Retry delay must be >= 0, got {delay}")
    return now + delay


def is_ready(job: JobRecord, now: datetime) -> bool:
    """Whether a retry-pending job is due for re-dispatch."""

    return (
        job.status == JobStatus.PENDING
        and job.next_retry_at is not None
        and job.next_retry_at <= now
    )


@dataclass(slots=True)
class RetryScheduler:
    """Fixed-delay retry scheduling used by the lifecycle controller."""

    delay: timedelta = DEFAULT_RETRY_DELAY

    def is_ready(self, job: JobRecord, now: datetime) -> bool:
        return is_ready(job, now)
