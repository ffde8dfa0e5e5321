"""Job queue baseline: jobs, append-only error logs, and transition events."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("source_reference", sa.String(), nullable=True),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recovered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("completed_attempt", sa.Integer(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_error_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("final_error_json", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("idx_jobs_status_created", "jobs", ["status", "created_at"], unique=False)
    op.create_index("idx_jobs_created", "jobs", ["created_at"], unique=False)
    op.create_index("idx_jobs_source_reference", "jobs", ["source_reference"], unique=False)
    op.create_index(
        "idx_jobs_status_next_retry",
        "jobs",
        ["status", "next_retry_at"],
        unique=False,
    )
    op.create_index("idx_jobs_status_started", "jobs", ["status", "started_at"], unique=False)
    op.create_index(
        "idx_jobs_last_error_timestamp",
        "jobs",
        ["last_error_timestamp"],
        unique=False,
    )

    op.create_table(
        "job_error_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=False),
        sa.Column("error_type", sa.String(), nullable=False, server_default="Error"),
        sa.Column("error_stack", sa.Text(), nullable=True),
        sa.Column("screenshot_url", sa.String(), nullable=True),
        sa.Column("screenshot_key", sa.String(), nullable=True),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("job_id", "sequence", name="uq_job_error_logs_job_sequence"),
    )
    op.create_index("ix_job_error_logs_job_id", "job_error_logs", ["job_id"], unique=False)
    op.create_index(
        "idx_job_error_logs_timestamp",
        "job_error_logs",
        ["timestamp"],
        unique=False,
    )

    op.create_table(
        "job_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_job_events_job_id", "job_events", ["job_id"], unique=False)
    op.create_index("ix_job_events_event_type", "job_events", ["event_type"], unique=False)
    op.create_index(
        "idx_job_events_job_time",
        "job_events",
        ["job_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_job_events_job_time", table_name="job_events")
    op.drop_index("ix_job_events_event_type", table_name="job_events")
    op.drop_index("ix_job_events_job_id", table_name="job_events")
    op.drop_table("job_events")
    op.drop_index("idx_job_error_logs_timestamp", table_name="job_error_logs")
    op.drop_index("ix_job_error_logs_job_id", table_name="job_error_logs")
    op.drop_table("job_error_logs")
    op.drop_index("idx_jobs_last_error_timestamp", table_name="jobs")
    op.drop_index("idx_jobs_status_started", table_name="jobs")
    op.drop_index("idx_jobs_status_next_retry", table_name="jobs")
    op.drop_index("idx_jobs_source_reference", table_name="jobs")
    op.drop_index("idx_jobs_created", table_name="jobs")
    op.drop_index("idx_jobs_status_created", table_name="jobs")
    op.drop_table("jobs")
