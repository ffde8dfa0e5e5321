"""Use-case services exposed to the submission front-end."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from autofill_queue.jobs import lifecycle
from autofill_queue.jobs.models import DEFAULT_MAX_ATTEMPTS, ErrorLogEntry, JobCreate, JobStatus
from autofill_queue.jobs.stats import (
    is_ready_for_retry,
    processing_time,
    retries_left,
    screenshot_urls,
    success_rate,
)
from autofill_queue.jobs.store import JobStore
from autofill_queue.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class JobStatusView:
    """Status of the latest job submitted for a source reference."""

    job_id: str
    source_reference: str | None
    status: JobStatus
    attempts: int
    max_attempts: int
    retries_left: int
    error_count: int
    error_logs: list[ErrorLogEntry]
    last_error: str | None
    last_error_timestamp: datetime | None
    final_error: ErrorLogEntry | None
    screenshot_urls: list[str]
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    failed_at: datetime | None
    next_retry_at: datetime | None
    ready_for_retry: bool
    processing_seconds: float | None
    success_rate: float


class JobQueueService:
    """Enqueue form submissions and report their progress."""

    def __init__(
        self,
        store: JobStore,
        *,
        default_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.default_max_attempts = default_max_attempts
        self.clock = clock

    def enqueue(
        self,
        payload: dict[str, Any],
        *,
        source_reference: str | None = None,
        max_attempts: int | None = None,
    ) -> str:
        """Queue a form payload for automation and return the new job id."""

        if not isinstance(payload, dict):
            raise ValueError("Job payload must be a JSON object.")
        record = lifecycle.new_job(
            JobCreate(
                payload=payload,
                source_reference=source_reference,
                max_attempts=max_attempts if max_attempts is not None else self.default_max_attempts,
            ),
            now=self.clock(),
        )
        job_id = self.store.insert(record)
        logger.info(
            "Enqueued job %s (reference=%s, max_attempts=%d)",
            job_id,
            source_reference or "-",
            record.max_attempts,
        )
        return job_id

    def job_status(self, source_reference: str) -> JobStatusView | None:
        job = self.store.find_by_reference(source_reference)
        if job is None:
            return None
        now = self.clock()
        elapsed = processing_time(job, now)
        return JobStatusView(
            job_id=job.job_id,
            source_reference=job.source_reference,
            status=job.status,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            retries_left=retries_left(job),
            error_count=len(job.error_logs),
            error_logs=list(job.error_logs),
            last_error=job.last_error,
            last_error_timestamp=job.last_error_timestamp,
            final_error=job.final_error,
            screenshot_urls=screenshot_urls(job),
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            failed_at=job.failed_at,
            next_retry_at=job.next_retry_at,
            ready_for_retry=is_ready_for_retry(job, now),
            processing_seconds=elapsed.total_seconds() if elapsed is not None else None,
            success_rate=success_rate(job),
        )
