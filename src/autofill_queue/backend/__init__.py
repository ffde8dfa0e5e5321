"""Form filler backends executing one job attempt."""

from autofill_queue.backend.base import FillRequest, FillResult, FormFiller
from autofill_queue.backend.command_filler import CommandFormFiller

__all__ = [
    "CommandFormFiller",
    "FillRequest",
    "FillResult",
    "FormFiller",
]
