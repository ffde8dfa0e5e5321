"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from autofill_queue.jobs.store import JobStore
from autofill_queue.storage.common import to_db_datetime
from autofill_queue.storage.sqlmodel_models import JobRow


class FakeClock:
    """Manually advanced clock injected into services under test."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 10, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch) -> None:
    """Keep developer AUTOFILL_QUEUE_* variables out of tests."""

    for name in list(os.environ):
        if name.startswith("AUTOFILL_QUEUE_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def db_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'queue.db'}"


@pytest.fixture()
def store(db_url: str) -> Iterator[JobStore]:
    job_store = JobStore(db_url)
    job_store.init_schema()
    yield job_store
    job_store.close()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def set_job_columns(store: JobStore) -> Callable[..., None]:
    """Overwrite raw job columns, e.g. to simulate a crashed worker."""

    def _set(job_id: str, **values: object) -> None:
        converted = {
            key: to_db_datetime(value) if isinstance(value, datetime) else value
            for key, value in values.items()
        }
        with Session(store.engine) as session:
            session.exec(
                sa_update(JobRow).where(col(JobRow.job_id) == job_id).values(**converted),
            )
            session.commit()

    return _set
