"""Queue dispatcher: claims ready jobs and runs them through a form filler."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from autofill_queue.backend.base import FillRequest, FormFiller
from autofill_queue.jobs.controller import LifecycleController
from autofill_queue.jobs.errors import (
    ClaimConflictError,
    InvalidTransitionError,
    JobStateConflictError,
)
from autofill_queue.jobs.models import (
    FORM_FILL_ERROR_TYPE,
    ErrorLogEntry,
    JobRecord,
    JobStatus,
    error_log_from_exception,
)
from autofill_queue.jobs.recovery import CrashRecoveryService
from autofill_queue.storage.common import utc_now

logger = logging.getLogger(__name__)

UNSUCCESSFUL_SUBMISSION_MESSAGE = "Form submission was not successful"


class AttemptOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    RETRIED = "retried"
    FAILED = "failed"
    CONFLICT = "conflict"


@dataclass(slots=True)
class DispatchSummary:
    """Aggregate dispatcher counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    conflicts: int = 0
    recovered: int = 0
    idle_polls: int = 0

    def merge(self, other: DispatchSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.conflicts += other.conflicts
        self.recovered += other.recovered
        self.idle_polls += other.idle_polls


class QueueDispatcher:
    """Consumes ready jobs with at most ``parallel_jobs`` in flight."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        controller: LifecycleController,
        filler: FormFiller,
        recovery: CrashRecoveryService,
        worker_id: str,
        parallel_jobs: int = 3,
        filler_timeout_seconds: int = 300,
        poll_interval_seconds: float = 2.0,
        recovery_interval_seconds: float = 300,
        recover_on_startup: bool = True,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if parallel_jobs < 1:
            raise ValueError(f"parallel_jobs must be >= 1, got {parallel_jobs}")
        self.controller = controller
        self.store = controller.store
        self.filler = filler
        self.recovery = recovery
        self.worker_id = worker_id
        self.parallel_jobs = parallel_jobs
        self.filler_timeout_seconds = filler_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.recovery_interval_seconds = recovery_interval_seconds
        self.clock = clock
        self._stop_requested = False
        self._last_sweep_monotonic: float | None = None
        self._startup_sweep_pending = recover_on_startup

    def run_once(self) -> DispatchSummary:
        """Fill the free slots once and wait for the claimed jobs to finish."""

        summary = DispatchSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        summary.recovered = self._maybe_sweep()

        free_slots = self.parallel_jobs - self.store.count_by_status(JobStatus.PROCESSING)
        if free_slots <= 0:
            logger.debug("No free slots (parallel_jobs=%d)", self.parallel_jobs)
            summary.idle_polls = 1
            return summary

        claimed = self._claim_jobs(free_slots, summary)
        if not claimed:
            summary.idle_polls = 1
            return summary

        logger.info(
            "Worker %s dispatching %d job(s): %s",
            self.worker_id,
            len(claimed),
            ", ".join(job.job_id for job in claimed),
        )
        with ThreadPoolExecutor(
            max_workers=len(claimed),
            thread_name_prefix="autofill-job",
        ) as pool:
            futures = [pool.submit(self._process, job) for job in claimed]
            outcomes = [future.result() for future in futures]

        summary.processed = len(claimed)
        for outcome in outcomes:
            if outcome == AttemptOutcome.SUCCEEDED:
                summary.succeeded += 1
            elif outcome == AttemptOutcome.RETRIED:
                summary.retried += 1
            elif outcome == AttemptOutcome.FAILED:
                summary.failed += 1
            else:
                summary.conflicts += 1
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int | None = 1,
    ) -> DispatchSummary:
        """Run dispatch rounds until the queue is idle or ``max_jobs`` is reached.

        Args:
            max_jobs: Stop after processing this many jobs (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting
                (None = poll forever, until SIGINT/SIGTERM).
        """

        aggregate = DispatchSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    return aggregate

                summary = self.run_once()
                aggregate.merge(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def request_stop(self) -> None:
        self._stop_requested = True

    def _maybe_sweep(self) -> int:
        now = time.monotonic()
        due = self._startup_sweep_pending or (
            self.recovery_interval_seconds > 0
            and self._last_sweep_monotonic is not None
            and now - self._last_sweep_monotonic >= self.recovery_interval_seconds
        )
        if self._last_sweep_monotonic is None:
            self._last_sweep_monotonic = now
        if not due:
            return 0
        self._startup_sweep_pending = False
        self._last_sweep_monotonic = now
        return self.recovery.sweep()

    def _claim_jobs(self, free_slots: int, summary: DispatchSummary) -> list[JobRecord]:
        now = self.clock()
        candidates: dict[str, JobRecord] = {}
        for job in self.store.list_retry_ready(now, limit=free_slots):
            if self.controller.scheduler.is_ready(job, now):
                candidates.setdefault(job.job_id, job)
        for job in self.store.list_pending(free_slots, ready_at=now):
            candidates.setdefault(job.job_id, job)

        claimed: list[JobRecord] = []
        for job in candidates.values():
            if len(claimed) >= free_slots or self._stop_requested:
                break
            try:
                claimed.append(self.controller.claim(job))
            except ClaimConflictError:
                logger.debug("Job %s was claimed by another worker", job.job_id)
                summary.conflicts += 1
        return claimed

    def _process(self, job: JobRecord) -> AttemptOutcome:
        if self.controller.has_reached_max_attempts(job):
            # Recovered after its last error was recorded but before it was failed.
            try:
                self.controller.fail_exhausted(job)
            except (JobStateConflictError, InvalidTransitionError) as error:
                logger.warning("Cannot finalize exhausted job %s: %s", job.job_id, error)
                return AttemptOutcome.CONFLICT
            return AttemptOutcome.FAILED

        attempt_number = job.attempts + 1
        try:
            result = self.filler.fill(
                FillRequest(
                    job_id=job.job_id,
                    payload=job.payload,
                    attempt_number=attempt_number,
                    timeout_seconds=self.filler_timeout_seconds,
                ),
            )
        except Exception as error:  # noqa: BLE001
            entry = error_log_from_exception(
                error,
                attempt_number=attempt_number,
                timestamp=self.clock(),
            )
        else:
            if result.success:
                try:
                    self.controller.succeed(job, attempt_number)
                except (JobStateConflictError, InvalidTransitionError) as error:
                    logger.warning("Cannot finish job %s: %s", job.job_id, error)
                    return AttemptOutcome.CONFLICT
                return AttemptOutcome.SUCCEEDED
            entry = ErrorLogEntry(
                timestamp=self.clock(),
                attempt_number=attempt_number,
                error_message=result.error or UNSUCCESSFUL_SUBMISSION_MESSAGE,
                error_type=FORM_FILL_ERROR_TYPE,
                screenshot_url=result.screenshot_url,
                screenshot_key=result.screenshot_key,
            )

        try:
            updated = self.controller.report_failure(job, entry)
        except (JobStateConflictError, InvalidTransitionError) as error:
            logger.warning("Cannot finish job %s: %s", job.job_id, error)
            return AttemptOutcome.CONFLICT
        if updated.status == JobStatus.FAILED:
            return AttemptOutcome.FAILED
        return AttemptOutcome.RETRIED

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.warning("Received %s; finishing in-flight jobs before exit", name)
            self.request_stop()

        try:
            original_sigint = signal.signal(signal.SIGINT, _handler)
            original_sigterm = signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return

        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
