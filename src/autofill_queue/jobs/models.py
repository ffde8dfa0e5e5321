"""Domain models for the form submission job queue."""

from __future__ import annotations

import traceback
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from autofill_queue.storage.common import from_iso

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_ERROR_TYPE = "Error"
FORM_FILL_ERROR_TYPE = "FormFillError"


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


@dataclass(slots=True)
class ErrorLogEntry:
    """One failed execution attempt.

    Screenshot fields only reference diagnostics stored elsewhere; the queue
    never holds the image bytes.
    """

    timestamp: datetime
    attempt_number: int
    error_message: str
    error_type: str = DEFAULT_ERROR_TYPE
    error_stack: str | None = None
    screenshot_url: str | None = None
    screenshot_key: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "attempt_number": self.attempt_number,
            "error_message": self.error_message,
            "error_type": self.error_type,
            "error_stack": self.error_stack,
            "screenshot_url": self.screenshot_url,
            "screenshot_key": self.screenshot_key,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ErrorLogEntry:
        return cls(
            timestamp=from_iso(str(data["timestamp"])),
            attempt_number=int(data["attempt_number"]),
            error_message=str(data["error_message"]),
            error_type=str(data.get("error_type") or DEFAULT_ERROR_TYPE),
            error_stack=data.get("error_stack"),
            screenshot_url=data.get("screenshot_url"),
            screenshot_key=data.get("screenshot_key"),
        )


@dataclass(slots=True)
class JobRecord:
    """Snapshot of one queued form submission and its full history."""

    job_id: str
    source_reference: str | None
    payload: dict[str, Any]
    status: JobStatus
    created_at: datetime
    attempts: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    last_attempt_at: datetime | None = None
    next_retry_at: datetime | None = None
    recovered_at: datetime | None = None
    completed_attempt: int | None = None
    last_error: str | None = None
    last_error_timestamp: datetime | None = None
    error_logs: tuple[ErrorLogEntry, ...] = ()
    final_error: ErrorLogEntry | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(slots=True)
class JobCreate:
    """Input payload for enqueuing a form submission."""

    payload: dict[str, Any]
    source_reference: str | None = None
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    job_id: str | None = None


@dataclass(slots=True)
class JobEventWrite:
    """Audit event written together with a state change."""

    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    details: dict[str, object] = field(default_factory=dict)


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job snapshot with event stream."""

    job: JobRecord
    events: list[JobEventView]


@dataclass(slots=True)
class JobPage:
    """One page of a job listing with the total for pagination."""

    jobs: list[JobRecord]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + self.limit < self.total

    @property
    def next_offset(self) -> int | None:
        return self.offset + self.limit if self.has_more else None


@dataclass(slots=True)
class StatusSummary:
    """Per-status aggregate used by queue statistics."""

    status: JobStatus
    count: int
    avg_attempts: float


def error_log_from_exception(
    error: BaseException,
    *,
    attempt_number: int,
    timestamp: datetime,
    screenshot_url: str | None = None,
    screenshot_key: str | None = None,
) -> ErrorLogEntry:
    """Build an error log entry from a raised exception."""

    stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    return ErrorLogEntry(
        timestamp=timestamp,
        attempt_number=attempt_number,
        error_message=str(error) or type(error).__name__,
        error_type=type(error).__name__,
        error_stack=stack or None,
        screenshot_url=screenshot_url,
        screenshot_key=screenshot_key,
    )
