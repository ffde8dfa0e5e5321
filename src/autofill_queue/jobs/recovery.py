"""Crash recovery for jobs orphaned in processing."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from autofill_queue.jobs.store import JobStore
from autofill_queue.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER = timedelta(minutes=10)


class CrashRecoveryService:
    """Return jobs whose worker died back to pending.

    There is no heartbeat: a processing job is considered stuck only when its
    ``started_at`` is missing or older than ``stale_after``, so the threshold
    must exceed the longest legitimate attempt.
    """

    def __init__(
        self,
        store: JobStore,
        *,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if stale_after < timedelta(0):
            raise ValueError(f"stale_after must be >= 0, got {stale_after}")
        self.store = store
        self.stale_after = stale_after
        self.clock = clock

    def sweep(self) -> int:
        """Recover stale processing jobs; returns how many were reset."""

        now = self.clock()
        recovered = self.store.bulk_recover_stuck(now - self.stale_after, now=now)
        if recovered:
            logger.warning(
                "Recovered %d job(s) stuck in processing for more than %s",
                recovered,
                self.stale_after,
            )
        else:
            logger.info("No stuck jobs older than %s", self.stale_after)
        return recovered

    def sweep_all(self) -> int:
        """Recover every processing job regardless of age.

        Only safe while no worker is running.
        """

        recovered = self.store.bulk_recover_stuck(None, now=self.clock())
        logger.warning("Force-recovered %d processing job(s)", recovered)
        return recovered
