"""SQLModel ORM tables for the job queue."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class JobRow(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_jobs_status_created", "status", "created_at"),
        Index("idx_jobs_created", "created_at"),
        Index("idx_jobs_source_reference", "source_reference"),
        Index("idx_jobs_status_next_retry", "status", "next_retry_at"),
        Index("idx_jobs_status_started", "status", "started_at"),
        Index("idx_jobs_last_error_timestamp", "last_error_timestamp"),
    )

    job_id: str = Field(primary_key=True)
    source_reference: str | None = None
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    failed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    last_attempt_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    next_retry_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    recovered_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    completed_attempt: int | None = None
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    last_error_timestamp: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    final_error_json: str | None = Field(default=None, sa_column=Column(Text))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobErrorLogRow(SQLModel, table=True):
    __tablename__ = "job_error_logs"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("job_id", "sequence", name="uq_job_error_logs_job_sequence"),
        Index("idx_job_error_logs_timestamp", "timestamp"),
    )

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    sequence: int
    timestamp: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    attempt_number: int
    error_message: str = Field(sa_column=Column(Text, nullable=False))
    error_type: str = Field(default="Error")
    error_stack: str | None = Field(default=None, sa_column=Column(Text))
    screenshot_url: str | None = None
    screenshot_key: str | None = None


class JobEventRow(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
