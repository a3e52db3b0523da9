"""
Retention sweeping for PG Jobs.

Deletes terminal jobs older than ``max_job_age`` and auto-dismissing
notifications whose ``dismiss_at`` has passed. Only statuses listed in
``retention_statuses`` are swept (COMPLETED and FAILED by default); QUEUED,
RUNNING and RETRYING jobs are never touched.
"""

import asyncio
import datetime
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .config import JobConfig
from .retry_policy import utcnow
from .store.base import JobStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetentionReport:
    jobs_deleted: int = 0
    notifications_deleted: int = 0

    @property
    def total(self) -> int:
        return self.jobs_deleted + self.notifications_deleted


class RetentionSweeper:

    def __init__(self,
                 store: JobStore,
                 config: Optional[JobConfig] = None,
                 clock: Callable[[], datetime.datetime] = utcnow):
        self.store = store
        self.config = config or JobConfig()
        self.clock = clock
        self.is_running = False
        self.sweep_task: Optional[asyncio.Task] = None

    async def run_once(self) -> RetentionReport:
        """Apply the retention policy once"""
        now = self.clock()
        cutoff = now - self.config.max_job_age_delta
        jobs_deleted = await self.store.delete_terminal_older_than(cutoff, self.config.retention_statuses)
        notifications_deleted = await self.store.delete_expired_notifications(now)

        report = RetentionReport(jobs_deleted, notifications_deleted)
        if report.total > 0:
            logger.debug(f"Retention: deleted {jobs_deleted} jobs older than {cutoff.isoformat()} "
                         f"and {notifications_deleted} expired notifications")
        return report

    async def start(self):
        if self.is_running:
            return
        self.is_running = True
        self.sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self):
        self.is_running = False
        if self.sweep_task is not None and not self.sweep_task.done():
            self.sweep_task.cancel()
            await asyncio.gather(self.sweep_task, return_exceptions=True)
        self.sweep_task = None

    async def _sweep_loop(self):
        """Background task that sweeps once at start, then every ``cleanup_interval``"""
        while self.is_running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Retention sweep error: {e}")
            await asyncio.sleep(self.config.cleanup_interval)
