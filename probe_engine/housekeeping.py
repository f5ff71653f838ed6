"""Periodic cleanup of expired reports and finished jobs."""

import asyncio
import logging
from dataclasses import dataclass

from probe_engine.jobs.store import JobStore
from probe_engine.reports.store import ReportStore

log = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class Housekeeper:
    """Purges report files past their TTL and evicts stale finished jobs."""

    report_store: ReportStore
    job_store: JobStore
    report_ttl: float
    job_ttl: float
    interval: float

    async def run_once(self) -> tuple[int, int]:
        """Run one cleanup pass.

        Returns:
            Number of purged reports and evicted jobs

        """
        purged = await asyncio.to_thread(
            self.report_store.purge_expired, self.report_ttl
        )
        evicted = self.job_store.evict_finished(self.job_ttl)
        return purged, evicted

    async def run_forever(self) -> None:
        """Clean up immediately, then every ``interval`` seconds until cancelled."""
        while True:
            try:
                await self.run_once()
            except Exception:
                log.exception("Housekeeping pass failed")
            await asyncio.sleep(self.interval)
