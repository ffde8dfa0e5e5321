"""Lifecycle controller: applies pure transitions through the job store."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from autofill_queue.jobs import lifecycle
from autofill_queue.jobs.errors import (
    ClaimConflictError,
    InvalidTransitionError,
    JobNotFoundError,
    JobStateConflictError,
)
from autofill_queue.jobs.lifecycle import Transition
from autofill_queue.jobs.models import ErrorLogEntry, JobRecord, JobStatus
from autofill_queue.jobs.retry import DEFAULT_RETRY_DELAY, RetryScheduler
from autofill_queue.jobs.store import JobStore
from autofill_queue.storage.common import utc_now

logger = logging.getLogger(__name__)


class LifecycleController:
    """Drive jobs through their lifecycle.

    ``claim`` is the only contended transition and goes through the store's
    atomic claim. Every other transition is performed by the worker owning the
    job and is written as a conditional update on the status it left the job
    in, so a job swept by crash recovery meanwhile is reported as
    :class:`JobStateConflictError` instead of being silently overwritten.
    """

    def __init__(
        self,
        store: JobStore,
        *,
        retry_delay: timedelta = DEFAULT_RETRY_DELAY,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.scheduler = RetryScheduler(delay=retry_delay)
        self.clock = clock

    def claim(self, job: JobRecord) -> JobRecord:
        """Take exclusive ownership of a pending job.

        Raises:
            InvalidTransitionError: the snapshot is not pending.
            ClaimConflictError: another worker claimed it first.
        """

        now = self.clock()
        transition = lifecycle.claim(job, now=now)
        if not self.store.atomic_claim(job.job_id, transition.expected_status, now=now):
            raise ClaimConflictError(job.job_id)
        claimed = self.store.find_by_id(job.job_id)
        if claimed is None:
            raise JobNotFoundError(job.job_id)
        logger.info(
            "Claimed job %s (attempt %d/%d)",
            claimed.job_id,
            claimed.attempts + 1,
            claimed.max_attempts,
        )
        return claimed

    def succeed(self, job: JobRecord, attempt_number: int | None = None) -> JobRecord:
        now = self.clock()
        record = self._apply(lifecycle.succeed(job, now=now, attempt_number=attempt_number), now)
        logger.info(
            "Job %s completed on attempt %s",
            record.job_id,
            record.completed_attempt,
        )
        return record

    def record_error(self, job: JobRecord, entry: ErrorLogEntry) -> JobRecord:
        now = self.clock()
        return self._apply(lifecycle.record_error(job, entry, now=now), now)

    @staticmethod
    def has_reached_max_attempts(job: JobRecord) -> bool:
        return lifecycle.has_reached_max_attempts(job)

    def fail(self, job: JobRecord, entry: ErrorLogEntry) -> JobRecord:
        now = self.clock()
        record = self._apply(lifecycle.fail(job, entry, now=now), now)
        if entry.screenshot_url:
            logger.error(
                "Job %s failed permanently after %d attempts: %s (screenshot: %s)",
                record.job_id,
                record.attempts,
                entry.error_message,
                entry.screenshot_url,
            )
        else:
            logger.error(
                "Job %s failed permanently after %d attempts: %s",
                record.job_id,
                record.attempts,
                entry.error_message,
            )
        return record

    def fail_exhausted(self, job: JobRecord) -> JobRecord:
        """Fail a claimed job whose attempts were used up before this claim.

        Happens when a job is recovered between recording its last error and
        being failed; the last recorded error becomes the final error.
        """

        if not job.error_logs:
            raise InvalidTransitionError(
                job.job_id,
                job.status.value,
                "fail",
                "attempts are exhausted but no error log was recorded",
            )
        return self.fail(job, job.error_logs[-1])

    def retry(self, job: JobRecord, delay: timedelta | None = None) -> JobRecord:
        now = self.clock()
        record = self._apply(
            lifecycle.retry(
                job,
                now=now,
                delay=self.scheduler.delay if delay is None else delay,
            ),
            now,
        )
        logger.warning(
            "Job %s attempt %d/%d failed: %s; retry at %s",
            record.job_id,
            record.attempts,
            record.max_attempts,
            record.last_error,
            record.next_retry_at.isoformat() if record.next_retry_at else "-",
        )
        return record

    def recover(self, job: JobRecord) -> JobRecord:
        now = self.clock()
        record = self._apply(lifecycle.recover(job, now=now), now)
        logger.info("Recovered job %s back to pending", record.job_id)
        return record

    def report_failure(
        self,
        job: JobRecord,
        entry: ErrorLogEntry,
        *,
        delay: timedelta | None = None,
    ) -> JobRecord:
        """Record an attempt error and then fail or reschedule the job."""

        recorded = self.record_error(job, entry)
        if self.has_reached_max_attempts(recorded):
            return self.fail(recorded, entry)
        return self.retry(recorded, delay)

    def _apply(self, transition: Transition, now: datetime) -> JobRecord:
        applied = self.store.update(
            transition.record,
            expected_status=transition.expected_status,
            event=transition.event,
            now=now,
        )
        if not applied:
            raise JobStateConflictError(transition.record.job_id, transition.expected_status.value)
        return transition.record
