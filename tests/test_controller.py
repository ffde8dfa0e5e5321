from __future__ import annotations

import logging
from datetime import timedelta

import allure
import pytest

from autofill_queue.jobs import lifecycle
from autofill_queue.jobs.controller import LifecycleController
from autofill_queue.jobs.errors import (
    ClaimConflictError,
    InvalidTransitionError,
    JobStateConflictError,
)
from autofill_queue.jobs.models import ErrorLogEntry, JobCreate, JobRecord, JobStatus
from autofill_queue.jobs.recovery import CrashRecoveryService
from autofill_queue.jobs.store import JobStore

pytestmark = [
    allure.epic("Job Lifecycle"),
    allure.feature("Lifecycle Controller"),
]


def _enqueue(store: JobStore, clock, *, max_attempts: int = 3) -> JobRecord:
    record = lifecycle.new_job(
        JobCreate(payload={"insurer": "acme"}, source_reference="captcha-9", max_attempts=max_attempts),
        now=clock(),
    )
    store.insert(record)
    return record


def _entry(job: JobRecord, clock, message: str = "timeout", **kwargs) -> ErrorLogEntry:
    return ErrorLogEntry(
        timestamp=clock(),
        attempt_number=job.attempts + 1,
        error_message=message,
        **kwargs,
    )


def test_claim_returns_stored_processing_record(store: JobStore, clock) -> None:
    controller = LifecycleController(store, clock=clock)
    job = _enqueue(store, clock)

    claimed = controller.claim(job)

    assert claimed.status == JobStatus.PROCESSING
    assert claimed.started_at == clock()
    assert store.find_by_id(job.job_id).status == JobStatus.PROCESSING


def test_claim_with_stale_snapshot_raises_conflict(store: JobStore, clock) -> None:
    controller = LifecycleController(store, clock=clock)
    job = _enqueue(store, clock)
    controller.claim(job)

    with pytest.raises(ClaimConflictError):
        controller.claim(job)


def test_claim_of_non_pending_snapshot_is_invalid(store: JobStore, clock) -> None:
    controller = LifecycleController(store, clock=clock)
    claimed = controller.claim(_enqueue(store, clock))

    with pytest.raises(InvalidTransitionError):
        controller.claim(claimed)


def test_succeed_persists_completion(store: JobStore, clock) -> None:
    controller = LifecycleController(store, clock=clock)
    claimed = controller.claim(_enqueue(store, clock))
    clock.advance(seconds=45)

    completed = controller.succeed(claimed)

    stored = store.find_by_id(claimed.job_id)
    assert stored is not None
    assert stored.status == JobStatus.COMPLETED
    assert stored.completed_at == clock()
    assert stored.completed_attempt == 1
    assert completed.completed_attempt == 1
    details = store.get_job_details(claimed.job_id)
    assert details is not None
    assert [event.event_type for event in details.events] == ["enqueued", "claimed", "completed"]


def test_report_failure_retries_then_fails(store: JobStore, clock, caplog) -> None:
    controller = LifecycleController(store, clock=clock, retry_delay=timedelta(seconds=5))
    job = _enqueue(store, clock, max_attempts=2)

    first = controller.report_failure(controller.claim(job), _entry(job, clock, "timeout"))
    assert first.status == JobStatus.PENDING
    assert first.next_retry_at == clock() + timedelta(seconds=5)

    clock.advance(seconds=6)
    claimed = controller.claim(first)
    final_entry = _entry(
        claimed,
        clock,
        "captcha rejected",
        error_type="FormFillError",
        screenshot_url="https://cdn.example/shot.png",
    )
    with caplog.at_level(logging.ERROR, logger="autofill_queue.jobs.controller"):
        failed = controller.report_failure(claimed, final_entry)

    assert failed.status == JobStatus.FAILED
    assert "https://cdn.example/shot.png" in caplog.text
    stored = store.find_by_id(job.job_id)
    assert stored is not None
    assert stored.status == JobStatus.FAILED
    assert stored.attempts == 2
    assert stored.final_error == final_entry
    assert stored.failed_at == clock()
    assert stored.next_retry_at is None


def test_retry_uses_explicit_zero_delay(store: JobStore, clock) -> None:
    controller = LifecycleController(store, clock=clock)
    job = _enqueue(store, clock)
    recorded = controller.record_error(controller.claim(job), _entry(job, clock))

    retried = controller.retry(recorded, timedelta(0))

    assert retried.next_retry_at == clock()
    assert [ready.job_id for ready in store.list_retry_ready(clock())] == [job.job_id]


def test_owner_transition_after_recovery_raises_state_conflict(store: JobStore, clock) -> None:
    controller = LifecycleController(store, clock=clock)
    claimed = controller.claim(_enqueue(store, clock))
    assert CrashRecoveryService(store, clock=clock).sweep_all() == 1

    with pytest.raises(JobStateConflictError):
        controller.succeed(claimed)

    stored = store.find_by_id(claimed.job_id)
    assert stored is not None
    assert stored.status == JobStatus.PENDING
    assert stored.completed_at is None


def test_recover_resets_processing_job_without_new_attempt(store: JobStore, clock) -> None:
    controller = LifecycleController(store, clock=clock)
    claimed = controller.claim(_enqueue(store, clock))
    clock.advance(minutes=20)

    recovered = controller.recover(claimed)

    assert recovered.status == JobStatus.PENDING
    assert recovered.attempts == 0
    stored = store.find_by_id(claimed.job_id)
    assert stored is not None
    assert stored.recovered_at == clock()


def test_fail_exhausted_uses_last_recorded_error(store: JobStore, clock) -> None:
    controller = LifecycleController(store, clock=clock)
    claimed = controller.claim(_enqueue(store, clock, max_attempts=1))
    entry = _entry(claimed, clock, "portal 502")
    controller.record_error(claimed, entry)
    assert CrashRecoveryService(store, clock=clock).sweep_all() == 1
    reclaimed = controller.claim(store.find_by_id(claimed.job_id))
    assert controller.has_reached_max_attempts(reclaimed)

    failed = controller.fail_exhausted(reclaimed)

    assert failed.status == JobStatus.FAILED
    assert failed.attempts == 1
    assert failed.final_error == entry
    assert store.find_by_id(claimed.job_id).error_logs == (entry,)


def test_fail_exhausted_without_error_log_is_invalid(store: JobStore, clock, set_job_columns) -> None:
    controller = LifecycleController(store, clock=clock)
    job = _enqueue(store, clock, max_attempts=1)
    set_job_columns(job.job_id, attempts=1)
    claimed = controller.claim(store.find_by_id(job.job_id))

    with pytest.raises(InvalidTransitionError, match="no error log"):
        controller.fail_exhausted(claimed)

    assert store.find_by_id(job.job_id).status == JobStatus.PROCESSING
