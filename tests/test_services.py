from __future__ import annotations

from datetime import timedelta

import allure
import pytest

from autofill_queue.jobs.controller import LifecycleController
from autofill_queue.jobs.models import ErrorLogEntry, JobStatus
from autofill_queue.jobs.services import JobQueueService
from autofill_queue.jobs.store import JobStore

pytestmark = [
    allure.epic("Job Lifecycle"),
    allure.feature("Queue Service"),
]


def test_enqueue_creates_pending_job_with_defaults(store: JobStore, clock) -> None:
    service = JobQueueService(store, default_max_attempts=4, clock=clock)

    job_id = service.enqueue({"vehicle": "VW Golf"}, source_reference="captcha-1")

    job = store.find_by_id(job_id)
    assert job is not None
    assert job.status == JobStatus.PENDING
    assert job.max_attempts == 4
    assert job.payload == {"vehicle": "VW Golf"}
    assert job.created_at == clock()


def test_enqueue_rejects_invalid_input(store: JobStore) -> None:
    service = JobQueueService(store)

    with pytest.raises(ValueError, match="JSON object"):
        service.enqueue(["not", "a", "dict"])  # type: ignore[arg-type]
    with pytest.raises(ValueError, match="max_attempts"):
        service.enqueue({}, max_attempts=0)
    assert store.list_jobs().total == 0


def test_job_status_reports_latest_job_for_reference(store: JobStore, clock) -> None:
    service = JobQueueService(store, clock=clock)
    controller = LifecycleController(store, clock=clock)
    service.enqueue({"attempt": "old"}, source_reference="captcha-5")
    clock.advance(seconds=1)
    job_id = service.enqueue({"attempt": "new"}, source_reference="captcha-5")
    job = store.find_by_id(job_id)
    assert job is not None

    claimed = controller.claim(job)
    controller.report_failure(
        claimed,
        ErrorLogEntry(
            timestamp=clock(),
            attempt_number=1,
            error_message="captcha rejected",
            error_type="FormFillError",
            screenshot_url="https://cdn.example/a.png",
        ),
    )
    clock.advance(seconds=30)

    view = service.job_status("captcha-5")

    assert view is not None
    assert view.job_id == job_id
    assert view.status == JobStatus.PENDING
    assert view.attempts == 1
    assert view.retries_left == 2
    assert view.error_count == 1
    assert view.last_error == "captcha rejected"
    assert view.screenshot_urls == ["https://cdn.example/a.png"]
    assert view.next_retry_at == clock() + timedelta(seconds=30)
    assert view.final_error is None
    assert view.ready_for_retry is False
    assert view.success_rate == 0.0

    clock.advance(seconds=30)
    assert service.job_status("captcha-5").ready_for_retry is True
    assert service.job_status("unknown") is None
