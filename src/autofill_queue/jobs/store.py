"""Durable job store backed by SQLModel."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy import delete, func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from autofill_queue.jobs.errors import PersistenceError
from autofill_queue.jobs.models import (
    ErrorLogEntry,
    JobDetails,
    JobEventView,
    JobEventWrite,
    JobPage,
    JobRecord,
    JobStatus,
    StatusSummary,
)
from autofill_queue.storage.alembic_runner import upgrade_head
from autofill_queue.storage.common import (
    build_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from autofill_queue.storage.sqlmodel_models import JobErrorLogRow, JobEventRow, JobRow

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class JobStore:
    """Job persistence facade; the database is the only synchronization point."""

    def __init__(self, database_url: str, *, busy_timeout_ms: int = 5000) -> None:
        self.database_url = database_url
        try:
            self.engine = build_engine(database_url=database_url, busy_timeout_ms=busy_timeout_ms)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Cannot open job store: {exc}") from exc

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        try:
            upgrade_head(self.database_url)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Schema migration failed: {exc}") from exc

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except SQLAlchemyError as exc:
            raise PersistenceError(str(exc)) from exc

    def insert(self, record: JobRecord) -> str:
        """Persist a new job and return its id."""

        now = record.created_at
        with self._session() as session:
            session.add(
                JobRow(
                    job_id=record.job_id,
                    source_reference=record.source_reference,
                    payload_json=json.dumps(record.payload, ensure_ascii=False, sort_keys=True),
                    status=record.status.value,
                    created_at=to_db_datetime(record.created_at),
                    attempts=record.attempts,
                    max_attempts=record.max_attempts,
                    updated_at=to_db_datetime(now),
                    **_mutable_values(record),
                ),
            )
            # The row must exist before children reference it.
            session.flush()
            _append_error_logs(session, record, persisted=0)
            _add_event(
                session,
                job_id=record.job_id,
                event=JobEventWrite(
                    event_type="enqueued",
                    status_from=None,
                    status_to=record.status,
                    details={
                        "max_attempts": record.max_attempts,
                        "source_reference": record.source_reference,
                    },
                ),
                created_at=now,
            )
            session.commit()
        return record.job_id

    def find_by_id(self, job_id: str) -> JobRecord | None:
        with self._session() as session:
            row = session.exec(select(JobRow).where(JobRow.job_id == job_id)).one_or_none()
            if row is None:
                return None
            return self._to_records(session, [row])[0]

    def find_by_reference(self, source_reference: str) -> JobRecord | None:
        """Most recently created job for a source reference."""

        with self._session() as session:
            row = session.exec(
                select(JobRow)
                .where(JobRow.source_reference == source_reference)
                .order_by(col(JobRow.created_at).desc())
                .limit(1),
            ).one_or_none()
            if row is None:
                return None
            return self._to_records(session, [row])[0]

    def list_pending(self, limit: int = 10, *, ready_at: datetime | None = None) -> list[JobRecord]:
        """Pending jobs, oldest first.

        With ``ready_at`` jobs whose retry is still scheduled in the future are
        left out.
        """

        statement = select(JobRow).where(JobRow.status == JobStatus.PENDING.value)
        if ready_at is not None:
            statement = statement.where(
                or_(
                    col(JobRow.next_retry_at).is_(None),
                    col(JobRow.next_retry_at) <= to_db_datetime(ready_at),
                ),
            )
        statement = statement.order_by(col(JobRow.created_at).asc()).limit(limit)
        with self._session() as session:
            return self._to_records(session, session.exec(statement).all())

    def list_retry_ready(
        self,
        now: datetime | None = None,
        *,
        limit: int | None = None,
    ) -> list[JobRecord]:
        """Retry-pending jobs whose ``next_retry_at`` has passed, earliest first."""

        statement = (
            select(JobRow)
            .where(
                JobRow.status == JobStatus.PENDING.value,
                col(JobRow.next_retry_at).is_not(None),
                col(JobRow.next_retry_at) <= to_db_datetime(now or utc_now()),
            )
            .order_by(col(JobRow.next_retry_at).asc(), col(JobRow.created_at).asc())
        )
        if limit is not None:
            statement = statement.limit(limit)
        with self._session() as session:
            return self._to_records(session, session.exec(statement).all())

    def list_failed(self, limit: int = 50) -> list[JobRecord]:
        with self._session() as session:
            rows = session.exec(
                select(JobRow)
                .where(JobRow.status == JobStatus.FAILED.value)
                .order_by(col(JobRow.failed_at).desc())
                .limit(limit),
            ).all()
            return self._to_records(session, rows)

    def count_by_status(self, status: JobStatus) -> int:
        with self._session() as session:
            return session.exec(
                select(func.count())
                .select_from(JobRow)
                .where(JobRow.status == status.value),
            ).one()

    def atomic_claim(
        self,
        job_id: str,
        expected_status: JobStatus = JobStatus.PENDING,
        *,
        now: datetime | None = None,
    ) -> bool:
        """Move a job to processing only if it is still in ``expected_status``.

        The conditional UPDATE is the first statement of its transaction, so
        concurrent claimers serialize on the database write lock and exactly
        one of them sees ``rowcount == 1``.
        """

        now = now or utc_now()
        with self._session() as session:
            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id) == job_id,
                    col(JobRow.status) == expected_status.value,
                )
                .values(
                    status=JobStatus.PROCESSING.value,
                    started_at=to_db_datetime(now),
                    next_retry_at=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False

            claimed = session.exec(select(JobRow).where(JobRow.job_id == job_id)).one()
            _add_event(
                session,
                job_id=job_id,
                event=JobEventWrite(
                    event_type="claimed",
                    status_from=expected_status,
                    status_to=JobStatus.PROCESSING,
                    details={"attempt_number": claimed.attempts + 1},
                ),
                created_at=now,
            )
            session.commit()
            return True

    def update(
        self,
        record: JobRecord,
        *,
        expected_status: JobStatus | None = None,
        event: JobEventWrite | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Persist the mutable fields of ``record`` and append new error logs.

        Returns ``False`` when ``expected_status`` is given and the stored job is
        no longer in it. Error logs already stored are never rewritten.
        """

        now = now or utc_now()
        conditions = [col(JobRow.job_id) == record.job_id]
        if expected_status is not None:
            conditions.append(col(JobRow.status) == expected_status.value)
        with self._session() as session:
            result = session.exec(
                sa_update(JobRow)
                .where(*conditions)
                .values(
                    status=record.status.value,
                    attempts=record.attempts,
                    max_attempts=record.max_attempts,
                    updated_at=to_db_datetime(now),
                    **_mutable_values(record),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False

            persisted = session.exec(
                select(func.count())
                .select_from(JobErrorLogRow)
                .where(JobErrorLogRow.job_id == record.job_id),
            ).one()
            _append_error_logs(session, record, persisted=persisted)
            if event is not None:
                _add_event(session, job_id=record.job_id, event=event, created_at=now)
            session.commit()
            return True

    def bulk_recover_stuck(self, older_than: datetime | None, *, now: datetime | None = None) -> int:
        """Return stuck processing jobs to pending in one statement.

        A job is stuck when its ``started_at`` is missing or earlier than
        ``older_than``. ``None`` recovers every processing job. Attempts are not
        touched.
        """

        now = now or utc_now()
        statement = sa_update(JobRow).where(col(JobRow.status) == JobStatus.PROCESSING.value)
        if older_than is not None:
            statement = statement.where(
                or_(
                    col(JobRow.started_at).is_(None),
                    col(JobRow.started_at) < to_db_datetime(older_than),
                ),
            )
        statement = statement.values(
            status=JobStatus.PENDING.value,
            recovered_at=to_db_datetime(now),
            updated_at=to_db_datetime(now),
        ).returning(col(JobRow.job_id))

        with self._session() as session:
            recovered_ids = list(session.exec(statement).scalars().all())
            for job_id in recovered_ids:
                _add_event(
                    session,
                    job_id=job_id,
                    event=JobEventWrite(
                        event_type="recovered",
                        status_from=JobStatus.PROCESSING,
                        status_to=JobStatus.PENDING,
                        details={
                            "older_than": older_than.isoformat() if older_than else None,
                        },
                    ),
                    created_at=now,
                )
            session.commit()
        return len(recovered_ids)

    def delete_terminal_older_than(self, cutoff: datetime) -> int:
        """Delete completed jobs finished before ``cutoff``; failed jobs are kept."""

        with self._session() as session:
            result = session.exec(
                delete(JobRow).where(
                    col(JobRow.status) == JobStatus.COMPLETED.value,
                    col(JobRow.completed_at) < to_db_datetime(cutoff),
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def count_terminal_older_than(self, cutoff: datetime) -> int:
        with self._session() as session:
            return session.exec(
                select(func.count())
                .select_from(JobRow)
                .where(
                    JobRow.status == JobStatus.COMPLETED.value,
                    col(JobRow.completed_at) < to_db_datetime(cutoff),
                ),
            ).one()

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        limit: int = 50,
        offset: int = 0,
        newest_first: bool = True,
    ) -> JobPage:
        """One page of jobs with the total count for pagination."""

        limit = max(1, min(limit, MAX_PAGE_SIZE))
        offset = max(0, offset)
        order = col(JobRow.created_at).desc() if newest_first else col(JobRow.created_at).asc()
        statement = select(JobRow)
        count_statement = select(func.count()).select_from(JobRow)
        if status is not None:
            statement = statement.where(JobRow.status == status.value)
            count_statement = count_statement.where(JobRow.status == status.value)
        with self._session() as session:
            total = session.exec(count_statement).one()
            rows = session.exec(statement.order_by(order).offset(offset).limit(limit)).all()
            jobs = self._to_records(session, rows)
        return JobPage(jobs=jobs, total=total, limit=limit, offset=offset)

    def status_summary(self) -> list[StatusSummary]:
        """Per-status counts and average attempts, one entry per status."""

        with self._session() as session:
            rows = session.exec(
                select(JobRow.status, func.count(), func.avg(JobRow.attempts)).group_by(
                    JobRow.status,
                ),
            ).all()
        by_status = {status: (count, avg) for status, count, avg in rows}
        summary: list[StatusSummary] = []
        for status in JobStatus:
            count, avg = by_status.get(status.value, (0, None))
            summary.append(
                StatusSummary(status=status, count=int(count), avg_attempts=float(avg or 0.0)),
            )
        return summary

    def get_job_details(self, job_id: str) -> JobDetails | None:
        """Return job snapshot with its event stream."""

        with self._session() as session:
            row = session.exec(select(JobRow).where(JobRow.job_id == job_id)).one_or_none()
            if row is None:
                return None
            job = self._to_records(session, [row])[0]
            event_rows = session.exec(
                select(JobEventRow)
                .where(JobEventRow.job_id == job_id)
                .order_by(col(JobEventRow.created_at).asc(), col(JobEventRow.id).asc()),
            ).all()

        events: list[JobEventView] = []
        for event_row in event_rows:
            details = {}
            if event_row.details_json:
                parsed = json.loads(event_row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                JobEventView(
                    event_id=event_row.id or 0,
                    job_id=event_row.job_id,
                    event_type=event_row.event_type,
                    status_from=(
                        JobStatus(event_row.status_from)
                        if event_row.status_from is not None
                        else None
                    ),
                    status_to=(
                        JobStatus(event_row.status_to) if event_row.status_to is not None else None
                    ),
                    created_at=to_utc_aware_datetime(event_row.created_at),
                    details=details,
                ),
            )
        return JobDetails(job=job, events=events)

    def _to_records(self, session: Session, rows: Sequence[JobRow]) -> list[JobRecord]:
        if not rows:
            return []
        logs_by_job: dict[str, list[ErrorLogEntry]] = {row.job_id: [] for row in rows}
        log_rows = session.exec(
            select(JobErrorLogRow)
            .where(col(JobErrorLogRow.job_id).in_(list(logs_by_job)))
            .order_by(col(JobErrorLogRow.job_id), col(JobErrorLogRow.sequence).asc()),
        ).all()
        for log_row in log_rows:
            logs_by_job[log_row.job_id].append(_to_error_log(log_row))
        return [_to_record(row, logs_by_job[row.job_id]) for row in rows]


def _mutable_values(record: JobRecord) -> dict[str, object]:
    return {
        "started_at": _db_or_none(record.started_at),
        "completed_at": _db_or_none(record.completed_at),
        "failed_at": _db_or_none(record.failed_at),
        "last_attempt_at": _db_or_none(record.last_attempt_at),
        "next_retry_at": _db_or_none(record.next_retry_at),
        "recovered_at": _db_or_none(record.recovered_at),
        "completed_attempt": record.completed_attempt,
        "last_error": record.last_error,
        "last_error_timestamp": _db_or_none(record.last_error_timestamp),
        "final_error_json": (
            json.dumps(record.final_error.to_dict(), ensure_ascii=False, sort_keys=True)
            if record.final_error is not None
            else None
        ),
    }


def _append_error_logs(session: Session, record: JobRecord, *, persisted: int) -> None:
    for sequence, entry in enumerate(record.error_logs[persisted:], start=persisted + 1):
        session.add(
            JobErrorLogRow(
                job_id=record.job_id,
                sequence=sequence,
                timestamp=to_db_datetime(entry.timestamp),
                attempt_number=entry.attempt_number,
                error_message=entry.error_message,
                error_type=entry.error_type,
                error_stack=entry.error_stack,
                screenshot_url=entry.screenshot_url,
                screenshot_key=entry.screenshot_key,
            ),
        )


def _add_event(
    session: Session,
    *,
    job_id: str,
    event: JobEventWrite,
    created_at: datetime,
) -> None:
    session.add(
        JobEventRow(
            job_id=job_id,
            event_type=event.event_type,
            status_from=event.status_from.value if event.status_from is not None else None,
            status_to=event.status_to.value if event.status_to is not None else None,
            details_json=json.dumps(event.details, ensure_ascii=False, sort_keys=True)
            if event.details
            else None,
            created_at=to_db_datetime(created_at),
        ),
    )


def _db_or_none(value: datetime | None) -> datetime | None:
    return to_db_datetime(value) if value is not None else None


def _aware_or_none(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_error_log(row: JobErrorLogRow) -> ErrorLogEntry:
    return ErrorLogEntry(
        timestamp=to_utc_aware_datetime(row.timestamp),
        attempt_number=row.attempt_number,
        error_message=row.error_message,
        error_type=row.error_type,
        error_stack=row.error_stack,
        screenshot_url=row.screenshot_url,
        screenshot_key=row.screenshot_key,
    )


def _to_record(row: JobRow, error_logs: list[ErrorLogEntry]) -> JobRecord:
    payload = json.loads(row.payload_json)
    return JobRecord(
        job_id=row.job_id,
        source_reference=row.source_reference,
        payload=payload if isinstance(payload, dict) else {"value": payload},
        status=JobStatus(row.status),
        created_at=to_utc_aware_datetime(row.created_at),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        started_at=_aware_or_none(row.started_at),
        completed_at=_aware_or_none(row.completed_at),
        failed_at=_aware_or_none(row.failed_at),
        last_attempt_at=_aware_or_none(row.last_attempt_at),
        next_retry_at=_aware_or_none(row.next_retry_at),
        recovered_at=_aware_or_none(row.recovered_at),
        completed_attempt=row.completed_attempt,
        last_error=row.last_error,
        last_error_timestamp=_aware_or_none(row.last_error_timestamp),
        error_logs=tuple(error_logs),
        final_error=(
            ErrorLogEntry.from_dict(json.loads(row.final_error_json))
            if row.final_error_json
            else None
        ),
    )
