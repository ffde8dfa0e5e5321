from __future__ import annotations

import json
import re
from datetime import timedelta
from pathlib import Path

import allure
from click.testing import CliRunner, Result

from autofill_queue.jobs.models import JobStatus
from autofill_queue.jobs.services import JobQueueService
from autofill_queue.jobs.store import JobStore
from autofill_queue.main import autofill_queue
from autofill_queue.storage.common import utc_now

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Job Queue CLI"),
]


def _invoke(runner: CliRunner, db_url: str, *args: str) -> Result:
    return runner.invoke(autofill_queue, ["jobs", *args, "--db-url", db_url])


def _enqueue(runner: CliRunner, db_url: str, payload: dict, *extra: str) -> str:
    result = _invoke(runner, db_url, "enqueue", "--payload", json.dumps(payload), *extra)
    assert result.exit_code == 0, result.output
    match = re.search(r"job_id=(\S+)", result.output)
    assert match is not None
    return match.group(1)


def test_enqueue_work_and_report(db_url: str) -> None:
    runner = CliRunner()
    ok_id = _enqueue(runner, db_url, {"insurer": "acme"}, "--reference", "captcha-1")
    bad_id = _enqueue(
        runner,
        db_url,
        {"simulate_error": "captcha rejected"},
        "--reference",
        "captcha-2",
        "--max-attempts",
        "1",
    )

    worker = _invoke(runner, db_url, "worker", "--once")
    assert worker.exit_code == 0, worker.output
    assert "processed=2 succeeded=1 failed=1 retried=0" in worker.output

    status = _invoke(runner, db_url, "status", "--reference", "captcha-1")
    assert status.exit_code == 0, status.output
    assert f"Job: {ok_id}" in status.output
    assert "Status: completed" in status.output
    assert "Success rate: 100%" in status.output

    failed = _invoke(runner, db_url, "failed")
    assert failed.exit_code == 0, failed.output
    assert "Failed jobs: 1" in failed.output
    assert bad_id in failed.output
    assert "error=captcha rejected" in failed.output

    inspect = _invoke(runner, db_url, "inspect", "--job-id", bad_id)
    assert inspect.exit_code == 0, inspect.output
    assert "Status: failed" in inspect.output
    assert "Attempts: 1/1" in inspect.output
    assert "#1" in inspect.output
    assert "FormFillError: captcha rejected" in inspect.output
    assert "Events: 4" in inspect.output

    listing = _invoke(runner, db_url, "list", "--status", "completed")
    assert listing.exit_code == 0, listing.output
    assert "Jobs: 1 of 1 (offset=0)" in listing.output
    assert ok_id in listing.output

    stats = _invoke(runner, db_url, "stats")
    assert stats.exit_code == 0, stats.output
    assert "Jobs total: 2" in stats.output
    assert "Success rate: 50.00%" in stats.output


def test_unknown_job_and_reference_are_reported(db_url: str) -> None:
    runner = CliRunner()

    inspect = _invoke(runner, db_url, "inspect", "--job-id", "missing")
    status = _invoke(runner, db_url, "status", "--reference", "missing")

    assert inspect.exit_code == 0
    assert "Job not found: missing" in inspect.output
    assert status.exit_code == 0
    assert "No job found for reference: missing" in status.output


def test_enqueue_rejects_invalid_payload(db_url: str) -> None:
    runner = CliRunner()

    not_json = _invoke(runner, db_url, "enqueue", "--payload", "{not json")
    not_object = _invoke(runner, db_url, "enqueue", "--payload", "[1, 2]")

    assert not_json.exit_code != 0
    assert "Payload is not valid JSON" in not_json.output
    assert not_object.exit_code != 0
    assert "JSON object" in not_object.output


def test_recover_uses_database_url_from_environment(db_url: str) -> None:
    store = JobStore(db_url)
    store.init_schema()
    try:
        service = JobQueueService(store)
        stuck = service.enqueue({"form": "stuck"})
        fresh = service.enqueue({"form": "fresh"})
        assert store.atomic_claim(stuck, JobStatus.PENDING, now=utc_now() - timedelta(minutes=15))
        assert store.atomic_claim(fresh, JobStatus.PENDING)
    finally:
        store.close()

    runner = CliRunner()
    result = runner.invoke(
        autofill_queue,
        ["jobs", "recover"],
        env={"AUTOFILL_QUEUE_DATABASE_URL": db_url},
    )

    assert result.exit_code == 0, result.output
    assert "Recovered 1 stuck job(s) older than 10 minute(s)." in result.output
    store = JobStore(db_url)
    try:
        assert store.find_by_id(stuck).status == JobStatus.PENDING
        assert store.find_by_id(stuck).recovered_at is not None
        assert store.find_by_id(fresh).status == JobStatus.PROCESSING
    finally:
        store.close()

    forced = runner.invoke(
        autofill_queue,
        ["jobs", "recover", "--all"],
        env={"AUTOFILL_QUEUE_DATABASE_URL": db_url},
    )
    assert forced.exit_code == 0, forced.output
    assert "Recovered 1 processing job(s) regardless of age." in forced.output


def test_recover_fails_when_store_is_unreachable(tmp_path: Path) -> None:
    unreachable = f"sqlite:///{tmp_path / 'missing-dir' / 'queue.db'}"

    result = CliRunner().invoke(
        autofill_queue,
        ["jobs", "recover"],
        env={"AUTOFILL_QUEUE_DATABASE_URL": unreachable},
    )

    assert result.exit_code != 0
    assert "Error" in result.output


def test_recover_rejects_conflicting_options(db_url: str) -> None:
    result = _invoke(CliRunner(), db_url, "recover", "--all", "--stale-minutes", "5")

    assert result.exit_code == 2
    assert "mutually exclusive" in result.output


def test_prune_dry_run_and_delete(db_url: str) -> None:
    runner = CliRunner()
    _enqueue(runner, db_url, {"insurer": "acme"})
    assert _invoke(runner, db_url, "worker", "--once").exit_code == 0

    dry_run = _invoke(runner, db_url, "prune", "--dry-run")
    assert dry_run.exit_code == 0, dry_run.output
    assert "Dry run: 0 completed job(s) older than 30 day(s)" in dry_run.output

    prune = _invoke(runner, db_url, "prune", "--days", "0")
    assert prune.exit_code == 0, prune.output
    assert "Deleted 1 completed job(s) older than 0 day(s)" in prune.output
    assert "Failed jobs are retained." in prune.output


def test_worker_loop_retries_until_success(db_url: str) -> None:
    runner = CliRunner()
    job_id = _enqueue(runner, db_url, {"fail_until_attempt": 2}, "--max-attempts", "3")

    result = runner.invoke(
        autofill_queue,
        ["jobs", "worker", "--loop", "--max-idle-polls", "3", "--db-url", db_url],
        env={
            "AUTOFILL_QUEUE_RETRY_DELAY_MS": "0",
            "AUTOFILL_QUEUE_POLL_INTERVAL_SECONDS": "0.05",
        },
    )

    assert result.exit_code == 0, result.output
    assert "succeeded=1" in result.output
    assert "retried=1" in result.output
    store = JobStore(db_url)
    try:
        job = store.find_by_id(job_id)
        assert job is not None
        assert job.status == JobStatus.COMPLETED
        assert job.completed_attempt == 2
    finally:
        store.close()


def test_worker_rejects_invalid_settings(db_url: str) -> None:
    result = CliRunner().invoke(
        autofill_queue,
        ["jobs", "worker", "--once", "--db-url", db_url],
        env={"AUTOFILL_QUEUE_PARALLEL_JOBS": "0"},
    )

    assert result.exit_code != 0
    assert "AUTOFILL_QUEUE_PARALLEL_JOBS" in result.output


def test_version() -> None:
    result = CliRunner().invoke(autofill_queue, ["--version"])

    assert result.exit_code == 0
    assert "autofill-queue" in result.output
