"""Derived per-job values and queue statistics."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from autofill_queue.jobs.models import JobRecord, JobStatus, StatusSummary
from autofill_queue.jobs.retry import is_ready


def is_ready_for_retry(job: JobRecord, now: datetime) -> bool:
    return is_ready(job, now)


def processing_time(job: JobRecord, now: datetime) -> timedelta | None:
    """Time spent since the latest processing start, up to completion or failure."""

    if job.started_at is None:
        return None
    end = job.completed_at or job.failed_at or now
    return end - job.started_at


def success_rate(job: JobRecord) -> float:
    """100 for a completed job, 0 otherwise.

    A job completed on its first attempt has ``attempts == 0`` and still counts
    as fully successful.
    """

    return 100.0 if job.status == JobStatus.COMPLETED else 0.0


def retries_left(job: JobRecord) -> int:
    return max(0, job.max_attempts - job.attempts)


def screenshot_urls(job: JobRecord) -> list[str]:
    return [entry.screenshot_url for entry in job.error_logs if entry.screenshot_url]


@dataclass(slots=True)
class QueueStatsSnapshot:
    """Aggregated queue counts used by the stats command."""

    status_counts: dict[str, int]
    avg_attempts: dict[str, float]
    total: int

    @property
    def success_rate(self) -> float | None:
        if self.total <= 0:
            return None
        return self.status_counts.get(JobStatus.COMPLETED.value, 0) / self.total

    @property
    def in_flight(self) -> int:
        return self.status_counts.get(JobStatus.PENDING.value, 0) + self.status_counts.get(
            JobStatus.PROCESSING.value,
            0,
        )


def build_queue_stats(summary: list[StatusSummary]) -> QueueStatsSnapshot:
    return QueueStatsSnapshot(
        status_counts={item.status.value: item.count for item in summary},
        avg_attempts={item.status.value: item.avg_attempts for item in summary},
        total=sum(item.count for item in summary),
    )


def render_stats_lines(snapshot: QueueStatsSnapshot) -> list[str]:
    """Render operator-facing queue statistics for CLI output."""

    lines = [
        f"Jobs total: {snapshot.total}",
        "Status: " + _fmt_key_value(snapshot.status_counts),
        f"In flight: {snapshot.in_flight}",
        f"Success rate: {_fmt_ratio(snapshot.success_rate)}",
    ]
    averages = [
        f"{status}={snapshot.avg_attempts[status]:.2f}"
        for status in sorted(snapshot.avg_attempts)
        if snapshot.status_counts.get(status)
    ]
    lines.append("Average attempts: " + (" ".join(averages) or "n/a"))
    return lines


def _fmt_ratio(value: float | None) -> str:
    if value is None:
        return "n/a"
    return f"{value:.2%}"


def _fmt_key_value(values: dict[str, int]) -> str:
    return " ".join(f"{key}={values[key]}" for key in sorted(values))
