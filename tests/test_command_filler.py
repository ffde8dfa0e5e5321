from __future__ import annotations

import json
import shlex
import sys
from pathlib import Path

import allure
import pytest

from autofill_queue.backend import CommandFormFiller, FillRequest
from autofill_queue.backend.echo_filler import main as echo_main
from autofill_queue.config import default_filler_command
from autofill_queue.jobs.errors import PermanentExecutionError, TransientExecutionError

pytestmark = [
    allure.epic("Form Filling"),
    allure.feature("Command Form Filler"),
]

PYTHON = shlex.quote(sys.executable)


def _request(payload: dict | None = None, *, attempt_number: int = 1, timeout: int = 30) -> FillRequest:
    return FillRequest(
        job_id="job-1",
        payload=payload if payload is not None else {"insurer": "acme"},
        attempt_number=attempt_number,
        timeout_seconds=timeout,
    )


def _python_template(code: str) -> str:
    return f"{PYTHON} -c {shlex.quote(code)} {{payload_file}}"


def test_echo_filler_reports_success() -> None:
    result = CommandFormFiller(default_filler_command()).fill(_request())

    assert result.success is True
    assert result.error is None


def test_echo_filler_reports_simulated_failure_with_screenshot() -> None:
    payload = {"simulate_error": "captcha rejected", "screenshot_url": "https://cdn.example/x.png"}

    result = CommandFormFiller(default_filler_command()).fill(_request(payload))

    assert result.success is False
    assert result.error == "captcha rejected"
    assert result.screenshot_url == "https://cdn.example/x.png"


def test_command_receives_payload_file_and_attempt_env() -> None:
    code = (
        "import json, os, sys; "
        "envelope = json.load(open(sys.argv[1])); "
        "print('progress line'); "
        "print(json.dumps(dict(success=False, "
        "error=envelope['payload']['insurer'] + ':' + os.environ['AUTOFILL_QUEUE_ATTEMPT'], "
        "screenshot_key=os.environ['AUTOFILL_QUEUE_JOB_ID'])))"
    )

    result = CommandFormFiller(_python_template(code)).fill(_request(attempt_number=2))

    assert result.success is False
    assert result.error == "acme:2"
    assert result.screenshot_key == "job-1"


def test_zero_exit_without_json_counts_as_success() -> None:
    result = CommandFormFiller(_python_template("print('done')")).fill(_request())

    assert result.success is True


def test_non_zero_exit_without_json_is_transient() -> None:
    code = "import sys; sys.stderr.write('browser crashed'); sys.exit(3)"

    with pytest.raises(TransientExecutionError, match="exited with code 3: browser crashed"):
        CommandFormFiller(_python_template(code)).fill(_request())


def test_timeout_is_transient() -> None:
    with pytest.raises(TransientExecutionError, match="timed out after 1s"):
        CommandFormFiller(_python_template("import time; time.sleep(10)")).fill(_request(timeout=1))


def test_missing_executable_is_permanent(tmp_path: Path) -> None:
    missing = tmp_path / "no-such-filler"

    with pytest.raises(PermanentExecutionError, match="not found"):
        CommandFormFiller(f"{missing} {{payload_file}}").fill(_request())


@pytest.mark.parametrize(
    ("template", "message"),
    [
        ("   ", "empty"),
        (f"{PYTHON} -m autofill_queue.backend.echo_filler", "must include"),
        ("filler {payload_file} {unknown}", "Unsupported command template placeholder"),
    ],
)
def test_invalid_templates_are_permanent(template: str, message: str) -> None:
    with pytest.raises(PermanentExecutionError, match=message):
        CommandFormFiller(template).fill(_request())


def test_echo_filler_main_honours_fail_until_attempt(tmp_path: Path, capsys) -> None:
    payload_file = tmp_path / "payload.json"
    payload_file.write_text(
        json.dumps({"job_id": "job-7", "attempt_number": 1, "payload": {"fail_until_attempt": 2}}),
        "utf-8",
    )

    assert echo_main(["--payload-file", str(payload_file)]) == 1
    failure = json.loads(capsys.readouterr().out.strip())
    assert failure["success"] is False
    assert failure["error"] == "Simulated failure on attempt 1"

    payload_file.write_text(
        json.dumps({"job_id": "job-7", "attempt_number": 2, "payload": {"fail_until_attempt": 2}}),
        "utf-8",
    )
    assert echo_main(["--payload-file", str(payload_file)]) == 0
    assert json.loads(capsys.readouterr().out.strip()) == {"success": True, "job_id": "job-7"}
