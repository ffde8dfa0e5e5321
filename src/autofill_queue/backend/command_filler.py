"""Subprocess-based form filler running an external automation command."""

from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
import tempfile
from pathlib import Path

from autofill_queue.backend.base import FillRequest, FillResult
from autofill_queue.jobs.errors import PermanentExecutionError, TransientExecutionError

logger = logging.getLogger(__name__)

_STDERR_TAIL_CHARS = 500


class CommandFormFiller:
    """Execute a command template once per job attempt.

    The payload is written to a JSON file whose path replaces
    ``{payload_file}`` in the template. The command reports its outcome as a
    JSON object on the last line of stdout::

        {"success": false, "error": "...", "screenshot_url": "...", "screenshot_key": "..."}
    """

    def __init__(self, command_template: str) -> None:
        self.command_template = command_template

    def fill(self, request: FillRequest) -> FillResult:
        with tempfile.TemporaryDirectory(prefix="autofill-queue-") as workdir:
            payload_file = Path(workdir) / "payload.json"
            payload_file.write_text(
                json.dumps(
                    {
                        "job_id": request.job_id,
                        "attempt_number": request.attempt_number,
                        "payload": request.payload,
                    },
                    ensure_ascii=False,
                ),
                "utf-8",
            )
            run_args = _build_run_args(
                command_template=self.command_template,
                payload_file=payload_file,
                job_id=request.job_id,
            )

            env = os.environ.copy()
            env["AUTOFILL_QUEUE_JOB_ID"] = request.job_id
            env["AUTOFILL_QUEUE_ATTEMPT"] = str(request.attempt_number)

            logger.debug("Running form filler for job %s: %s", request.job_id, run_args[0])
            try:
                completed = subprocess.run(  # noqa: S603
                    run_args,
                    env=env,
                    capture_output=True,
                    text=True,
                    timeout=request.timeout_seconds,
                    check=False,
                )
            except FileNotFoundError as error:
                raise PermanentExecutionError(
                    f"Form filler command not found: {run_args[0]}",
                ) from error
            except subprocess.TimeoutExpired as error:
                raise TransientExecutionError(
                    f"Form filler timed out after {request.timeout_seconds}s",
                ) from error
            except OSError as error:
                raise TransientExecutionError(f"Form filler failed to start: {error}") from error

        result = _parse_result(completed.stdout)
        if result is not None:
            return result
        if completed.returncode != 0:
            stderr_tail = completed.stderr.strip()[-_STDERR_TAIL_CHARS:]
            raise TransientExecutionError(
                f"Form filler exited with code {completed.returncode}"
                + (f": {stderr_tail}" if stderr_tail else ""),
            )
        return FillResult(success=True)


def _build_run_args(*, command_template: str, payload_file: Path, job_id: str) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise PermanentExecutionError("Form filler command template is empty.")
    if "{payload_file}" not in stripped:
        raise PermanentExecutionError("Form filler command template must include {payload_file}.")
    try:
        rendered = stripped.format(
            payload_file=shlex.quote(str(payload_file)),
            job_id=shlex.quote(job_id),
        )
    except (KeyError, IndexError) as error:
        raise PermanentExecutionError(
            f"Unsupported command template placeholder: {error}",
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise PermanentExecutionError("Form filler command template rendered empty command.")
    return argv


def _parse_result(stdout: str) -> FillResult | None:
    lines = [line.strip() for line in stdout.splitlines() if line.strip()]
    if not lines:
        return None
    try:
        data = json.loads(lines[-1])
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict) or "success" not in data:
        return None
    return FillResult(
        success=bool(data["success"]),
        error=str(data["error"]) if data.get("error") else None,
        screenshot_url=data.get("screenshot_url") or None,
        screenshot_key=data.get("screenshot_key") or None,
    )
