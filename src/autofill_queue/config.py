"""Runtime configuration for the job queue and its workers."""

from __future__ import annotations

import os
import shlex
import socket
import sys
from dataclasses import dataclass, field

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

DEFAULT_DATABASE_URL = "sqlite:///.autofill_queue.db"


def default_filler_command() -> str:
    """Command template running the bundled deterministic echo filler."""

    return (
        f"{shlex.quote(sys.executable)} -m autofill_queue.backend.echo_filler "
        "--payload-file {payload_file}"
    )


@dataclass(slots=True)
class QueueSettings:
    """Job scheduling and worker pool settings."""

    max_attempts: int = 3
    retry_delay_ms: int = 60_000
    parallel_jobs: int = 3
    poll_interval_seconds: float = 2.0
    worker_id: str = ""


@dataclass(slots=True)
class RecoverySettings:
    """Crash recovery sweep settings."""

    stale_after_seconds: int = 600
    interval_seconds: int = 300
    recover_on_startup: bool = True


@dataclass(slots=True)
class RetentionSettings:
    """Completed-job retention settings."""

    completed_retention_days: int = 30


@dataclass(slots=True)
class FillerSettings:
    """External form automation command settings."""

    command: str = field(default_factory=default_filler_command)
    timeout_seconds: int = 300


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    database_url: str = DEFAULT_DATABASE_URL
    sqlite_busy_timeout_ms: int = 5_000
    queue: QueueSettings = field(default_factory=QueueSettings)
    recovery: RecoverySettings = field(default_factory=RecoverySettings)
    retention: RetentionSettings = field(default_factory=RetentionSettings)
    filler: FillerSettings = field(default_factory=FillerSettings)

    @classmethod
    def from_env(cls, database_url: str | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            database_url=database_url
            or os.getenv("AUTOFILL_QUEUE_DATABASE_URL", DEFAULT_DATABASE_URL),
            sqlite_busy_timeout_ms=int(os.getenv("AUTOFILL_QUEUE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            queue=QueueSettings(
                max_attempts=int(os.getenv("AUTOFILL_QUEUE_MAX_ATTEMPTS", "3")),
                retry_delay_ms=int(os.getenv("AUTOFILL_QUEUE_RETRY_DELAY_MS", "60000")),
                parallel_jobs=int(os.getenv("AUTOFILL_QUEUE_PARALLEL_JOBS", "3")),
                poll_interval_seconds=float(
                    os.getenv("AUTOFILL_QUEUE_POLL_INTERVAL_SECONDS", "2.0"),
                ),
                worker_id=os.getenv("AUTOFILL_QUEUE_WORKER_ID", "").strip()
                or f"{socket.gethostname()}-{os.getpid()}",
            ),
            recovery=RecoverySettings(
                stale_after_seconds=int(os.getenv("AUTOFILL_QUEUE_STALE_AFTER_SECONDS", "600")),
                interval_seconds=int(os.getenv("AUTOFILL_QUEUE_RECOVERY_INTERVAL_SECONDS", "300")),
                recover_on_startup=_env_bool("AUTOFILL_QUEUE_RECOVER_ON_STARTUP", default=True),
            ),
            retention=RetentionSettings(
                completed_retention_days=int(
                    os.getenv("AUTOFILL_QUEUE_COMPLETED_RETENTION_DAYS", "30"),
                ),
            ),
            filler=FillerSettings(
                command=os.getenv("AUTOFILL_QUEUE_FILLER_COMMAND", "").strip()
                or default_filler_command(),
                timeout_seconds=int(os.getenv("AUTOFILL_QUEUE_FILLER_TIMEOUT_SECONDS", "300")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any setting is out of range."""

        try:
            make_url(self.database_url)
        except ArgumentError as error:
            raise ValueError(
                f"Invalid AUTOFILL_QUEUE_DATABASE_URL: {self.database_url!r}",
            ) from error
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("AUTOFILL_QUEUE_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.queue.max_attempts < 1:
            raise ValueError("AUTOFILL_QUEUE_MAX_ATTEMPTS must be >= 1.")
        if self.queue.retry_delay_ms < 0:
            raise ValueError("AUTOFILL_QUEUE_RETRY_DELAY_MS must be >= 0.")
        if self.queue.parallel_jobs < 1:
            raise ValueError("AUTOFILL_QUEUE_PARALLEL_JOBS must be >= 1.")
        if self.queue.poll_interval_seconds <= 0:
            raise ValueError("AUTOFILL_QUEUE_POLL_INTERVAL_SECONDS must be > 0.")
        if self.recovery.stale_after_seconds <= 0:
            raise ValueError("AUTOFILL_QUEUE_STALE_AFTER_SECONDS must be > 0.")
        if self.recovery.interval_seconds < 0:
            raise ValueError("AUTOFILL_QUEUE_RECOVERY_INTERVAL_SECONDS must be >= 0.")
        if self.retention.completed_retention_days < 0:
            raise ValueError("AUTOFILL_QUEUE_COMPLETED_RETENTION_DAYS must be >= 0.")
        if "{payload_file}" not in self.filler.command:
            raise ValueError("AUTOFILL_QUEUE_FILLER_COMMAND must include {payload_file}.")
        if self.filler.timeout_seconds <= 0:
            raise ValueError("AUTOFILL_QUEUE_FILLER_TIMEOUT_SECONDS must be > 0.")
        if self.filler.timeout_seconds >= self.recovery.stale_after_seconds:
            raise ValueError(
                "AUTOFILL_QUEUE_FILLER_TIMEOUT_SECONDS must be below "
                "AUTOFILL_QUEUE_STALE_AFTER_SECONDS so running jobs are never recovered.",
            )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
