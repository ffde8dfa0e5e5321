"""Controllers for job queue CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta

from autofill_queue.backend import CommandFormFiller
from autofill_queue.config import Settings
from autofill_queue.jobs.controller import LifecycleController
from autofill_queue.jobs.dispatcher import QueueDispatcher
from autofill_queue.jobs.models import JobRecord, JobStatus
from autofill_queue.jobs.recovery import CrashRecoveryService
from autofill_queue.jobs.retention import RetentionCleaner
from autofill_queue.jobs.services import JobQueueService
from autofill_queue.jobs.stats import build_queue_stats, render_stats_lines, retries_left
from autofill_queue.jobs.store import JobStore


@dataclass(slots=True)
class JobEnqueueCommand:
    """CLI input for job enqueue."""

    db_url: str | None
    payload: str
    reference: str | None
    max_attempts: int | None


@dataclass(slots=True)
class JobListCommand:
    """CLI input for job listing."""

    db_url: str | None
    status: str | None
    limit: int
    offset: int = 0


@dataclass(slots=True)
class JobInspectCommand:
    """CLI input for job inspection."""

    db_url: str | None
    job_id: str


@dataclass(slots=True)
class JobStatusCommand:
    """CLI input for status lookup by source reference."""

    db_url: str | None
    reference: str


@dataclass(slots=True)
class JobStatsCommand:
    db_url: str | None


@dataclass(slots=True)
class JobFailedCommand:
    """CLI input for failed job listing."""

    db_url: str | None
    limit: int


@dataclass(slots=True)
class JobWorkerCommand:
    """CLI input for worker execution."""

    db_url: str | None
    once: bool
    max_jobs: int | None
    max_idle_polls: int | None = 1


@dataclass(slots=True)
class JobRecoverCommand:
    """CLI input for the stuck-job recovery utility."""

    db_url: str | None
    stale_minutes: int | None
    all_processing: bool = False


@dataclass(slots=True)
class JobPruneCommand:
    """CLI input for completed-job retention cleanup."""

    db_url: str | None
    days: int | None
    dry_run: bool


class JobQueueCliController:
    """Coordinates queue, worker, and maintenance CLI operations."""

    def enqueue(self, command: JobEnqueueCommand) -> list[str]:
        try:
            payload = json.loads(command.payload)
        except json.JSONDecodeError as error:
            raise ValueError(f"Payload is not valid JSON: {error}") from error

        settings = Settings.from_env(database_url=command.db_url)
        with _store(settings) as store:
            service = JobQueueService(
                store,
                default_max_attempts=settings.queue.max_attempts,
            )
            job_id = service.enqueue(
                payload,
                source_reference=command.reference,
                max_attempts=command.max_attempts,
            )
            job = store.find_by_id(job_id)

        status = job.status.value if job is not None else JobStatus.PENDING.value
        return [f"Job enqueued: job_id={job_id} status={status}"]

    def list_jobs(self, command: JobListCommand) -> list[str]:
        settings = Settings.from_env(database_url=command.db_url)
        status_filter = _parse_status(command.status)
        with _store(settings) as store:
            page = store.list_jobs(status=status_filter, limit=command.limit, offset=command.offset)

        lines = [f"Jobs: {len(page.jobs)} of {page.total} (offset={page.offset})"]
        lines.extend(_job_line(job) for job in page.jobs)
        if page.next_offset is not None:
            lines.append(f"More: --offset {page.next_offset}")
        return lines

    def inspect_job(self, command: JobInspectCommand) -> list[str]:
        settings = Settings.from_env(database_url=command.db_url)
        with _store(settings) as store:
            details = store.get_job_details(command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Reference: {job.source_reference or '-'}",
            f"Status: {job.status.value}",
            f"Attempts: {job.attempts}/{job.max_attempts}",
            f"Created: {job.created_at.isoformat()}",
            f"Started: {_fmt_time(job.started_at)}",
            f"Completed: {_fmt_time(job.completed_at)}",
            f"Failed: {_fmt_time(job.failed_at)}",
            f"Next retry: {_fmt_time(job.next_retry_at)}",
            f"Recovered: {_fmt_time(job.recovered_at)}",
            f"Last error: {job.last_error or '-'}",
            f"Payload: {json.dumps(job.payload, ensure_ascii=False, sort_keys=True)}",
            f"Error logs: {len(job.error_logs)}",
        ]
        for entry in job.error_logs:
            lines.append(
                f"  #{entry.attempt_number} {entry.timestamp.isoformat()} "
                f"{entry.error_type}: {entry.error_message}"
                + (f" screenshot={entry.screenshot_url}" if entry.screenshot_url else ""),
            )
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def job_status(self, command: JobStatusCommand) -> list[str]:
        settings = Settings.from_env(database_url=command.db_url)
        with _store(settings) as store:
            view = JobQueueService(store).job_status(command.reference)
        if view is None:
            return [f"No job found for reference: {command.reference}"]

        lines = [
            f"Job: {view.job_id}",
            f"Status: {view.status.value}",
            f"Attempts: {view.attempts}/{view.max_attempts} (retries left: {view.retries_left})",
            f"Errors: {view.error_count}",
            f"Last error: {view.last_error or '-'}",
            f"Next retry: {_fmt_time(view.next_retry_at)}"
            + (" (ready)" if view.ready_for_retry else ""),
            f"Success rate: {view.success_rate:.0f}%",
        ]
        if view.processing_seconds is not None:
            lines.append(f"Processing time: {view.processing_seconds:.1f}s")
        if view.final_error is not None:
            lines.append(f"Final error: {view.final_error.error_message}")
        lines.extend(f"Screenshot: {url}" for url in view.screenshot_urls)
        return lines

    def stats(self, command: JobStatsCommand) -> list[str]:
        """Show queue counts and overall success rate."""

        settings = Settings.from_env(database_url=command.db_url)
        with _store(settings) as store:
            summary = store.status_summary()
        return render_stats_lines(build_queue_stats(summary))

    def failed_jobs(self, command: JobFailedCommand) -> list[str]:
        settings = Settings.from_env(database_url=command.db_url)
        with _store(settings) as store:
            jobs = store.list_failed(limit=command.limit)

        lines = [f"Failed jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} failed_at={_fmt_time(job.failed_at)} "
                f"attempts={job.attempts}/{job.max_attempts} "
                f"error={job.final_error.error_message if job.final_error else '-'}",
            )
        return lines

    def run_worker(self, command: JobWorkerCommand) -> list[str]:
        settings = Settings.from_env(database_url=command.db_url)
        settings.validate()
        with _store(settings) as store:
            controller = LifecycleController(
                store,
                retry_delay=timedelta(milliseconds=settings.queue.retry_delay_ms),
            )
            dispatcher = QueueDispatcher(
                controller=controller,
                filler=CommandFormFiller(settings.filler.command),
                recovery=CrashRecoveryService(
                    store,
                    stale_after=timedelta(seconds=settings.recovery.stale_after_seconds),
                ),
                worker_id=settings.queue.worker_id,
                parallel_jobs=settings.queue.parallel_jobs,
                filler_timeout_seconds=settings.filler.timeout_seconds,
                poll_interval_seconds=settings.queue.poll_interval_seconds,
                recovery_interval_seconds=settings.recovery.interval_seconds,
                recover_on_startup=settings.recovery.recover_on_startup,
            )
            summary = (
                dispatcher.run_once()
                if command.once
                else dispatcher.run_loop(
                    max_jobs=command.max_jobs,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} retried={summary.retried} "
            f"conflicts={summary.conflicts} recovered={summary.recovered} "
            f"idle_polls={summary.idle_polls}",
        ]

    def recover(self, command: JobRecoverCommand) -> list[str]:
        settings = Settings.from_env(database_url=command.db_url)
        stale_after = (
            timedelta(minutes=command.stale_minutes)
            if command.stale_minutes is not None
            else timedelta(seconds=settings.recovery.stale_after_seconds)
        )
        with _store(settings) as store:
            service = CrashRecoveryService(store, stale_after=stale_after)
            if command.all_processing:
                recovered = service.sweep_all()
                return [f"Recovered {recovered} processing job(s) regardless of age."]
            recovered = service.sweep()
        return [f"Recovered {recovered} stuck job(s) older than {_fmt_duration(stale_after)}."]

    def prune(self, command: JobPruneCommand) -> list[str]:
        settings = Settings.from_env(database_url=command.db_url)
        days = command.days if command.days is not None else settings.retention.completed_retention_days
        with _store(settings) as store:
            result = RetentionCleaner(store, retention_days=days).purge(dry_run=command.dry_run)

        if result.dry_run:
            return [
                f"Dry run: {result.matched} completed job(s) older than {days} day(s) "
                f"(before {result.cutoff.isoformat()}) would be deleted.",
            ]
        return [
            f"Deleted {result.deleted} completed job(s) older than {days} day(s) "
            f"(before {result.cutoff.isoformat()}). Failed jobs are retained.",
        ]


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    return JobStatus(value.strip().lower())


def _job_line(job: JobRecord) -> str:
    return (
        f"  {job.job_id} status={job.status.value} "
        f"attempts={job.attempts}/{job.max_attempts} retries_left={retries_left(job)} "
        f"reference={job.source_reference or '-'} created_at={job.created_at.isoformat()}"
    )


def _fmt_time(value: datetime | None) -> str:
    return value.isoformat() if value is not None else "-"


def _fmt_duration(value: timedelta) -> str:
    minutes, seconds = divmod(int(value.total_seconds()), 60)
    if seconds:
        return f"{minutes}m{seconds}s"
    return f"{minutes} minute(s)"


@contextmanager
def _store(settings: Settings) -> Iterator[JobStore]:
    store = JobStore(settings.database_url, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    try:
        store.init_schema()
        yield store
    finally:
        store.close()
