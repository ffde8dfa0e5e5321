"""Retention cleanup for completed jobs."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from autofill_queue.jobs.store import JobStore
from autofill_queue.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 30


@dataclass(slots=True)
class RetentionResult:
    cutoff: datetime
    matched: int
    deleted: int
    dry_run: bool


class RetentionCleaner:
    """Purge completed jobs past the retention window.

    Failed jobs are kept indefinitely for audit and are never purged here.
    """

    def __init__(
        self,
        store: JobStore,
        *,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if retention_days < 0:
            raise ValueError(f"retention_days must be >= 0, got {retention_days}")
        self.store = store
        self.retention_days = retention_days
        self.clock = clock

    def cutoff(self) -> datetime:
        return self.clock() - timedelta(days=self.retention_days)

    def purge(self, *, dry_run: bool = False) -> RetentionResult:
        cutoff = self.cutoff()
        if dry_run:
            matched = self.store.count_terminal_older_than(cutoff)
            logger.info(
                "Dry run: %d completed job(s) older than %s would be deleted",
                matched,
                cutoff.isoformat(),
            )
            return RetentionResult(cutoff=cutoff, matched=matched, deleted=0, dry_run=True)

        deleted = self.store.delete_terminal_older_than(cutoff)
        logger.info("Deleted %d completed job(s) older than %s", deleted, cutoff.isoformat())
        return RetentionResult(cutoff=cutoff, matched=deleted, deleted=deleted, dry_run=False)
