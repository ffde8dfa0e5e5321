"""Backend interface for form submission attempts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol


@dataclass(slots=True)
class FillRequest:
    """Inputs required to execute one job attempt."""

    job_id: str
    payload: dict[str, Any]
    attempt_number: int
    timeout_seconds: int


@dataclass(slots=True)
class FillResult:
    """Outcome reported by a form filler that ran to completion.

    ``success=False`` is an ordinary unsuccessful submission (e.g. the portal
    rejected the form); infrastructure failures are raised as
    :class:`~autofill_queue.jobs.errors.ExecutionError` instead.
    """

    success: bool
    error: str | None = None
    screenshot_url: str | None = None
    screenshot_key: str | None = None


class FormFiller(Protocol):
    """Protocol implemented by form automation backends."""

    def fill(self, request: FillRequest) -> FillResult:
        """Run one submission attempt and report its outcome."""
