"""
Service object tying the job engine together.

``JobManager`` is constructed explicitly and injected where it is needed (the
worker, the HTTP API, tests); there is no module-level singleton.

    store = PostgresJobStore(db_pool)
    manager = JobManager(store, registry, JobConfig.from_env())
    async with manager:
        job_id = await manager.enqueue("user-1", {"type": "performance_analysis", "domain": "example.com"})
"""

import datetime
import logging
from typing import Any, Callable, List, Mapping, Optional, Union

from .config import JobConfig
from .errors import ValidationError
from .job_priority import JobPriority, resolve_priority
from .job_types import Job, JobStatus, LifecycleEvent, Notification
from .notifications import NotificationPublisher
from .payloads import BaseJobInput, parse_job_input
from .processors import ProcessorRegistry
from .retention import RetentionReport, RetentionSweeper
from .retry_policy import RetryPolicy, utcnow
from .scheduler import Scheduler
from .statistics import JobStatistics, StatisticsAggregator
from .store.base import JobStore

logger = logging.getLogger(__name__)


class JobManager:

    def __init__(self,
                 store: JobStore,
                 registry: Optional[ProcessorRegistry] = None,
                 config: Optional[JobConfig] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 clock: Callable[[], datetime.datetime] = utcnow):
        self.store = store
        self.registry = registry if registry is not None else ProcessorRegistry()
        self.config = config or JobConfig()
        self.clock = clock
        self.publisher = NotificationPublisher(
            store,
            completed_dismiss_after=self.config.completed_dismiss_after,
            cancelled_dismiss_after=self.config.cancelled_dismiss_after,
            clock=clock,
        )
        self.scheduler = Scheduler(
            store,
            self.registry,
            self.config,
            publisher=self.publisher,
            retry_policy=retry_policy,
            clock=clock,
        )
        self.sweeper = RetentionSweeper(store, self.config, clock=clock)
        self.statistics = StatisticsAggregator(store)
        self.is_running = False

    async def start(self):
        """Initialize storage, then start the scheduler and retention sweeper"""
        if self.is_running:
            return
        await self.store.initialize()
        await self.scheduler.start()
        try:
            await self.sweeper.start()
        except Exception:
            await self.scheduler.stop()
            raise
        self.is_running = True
        logger.info(f"Job manager started: max_concurrent={self.config.max_concurrent_jobs}, "
                    f"processors={sorted(t.value for t in self.registry)}")

    async def stop(self, timeout: Optional[float] = None):
        """Stop the sweeper, then drain the scheduler"""
        if not self.is_running:
            return
        self.is_running = False
        await self.sweeper.stop()
        await self.scheduler.stop(timeout)
        logger.info("Job manager stopped")

    async def __aenter__(self) -> 'JobManager':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    async def enqueue(self,
                      owner_id: str,
                      job_input: Union[BaseJobInput, Mapping[str, Any], str],
                      priority: Union[JobPriority, int, None] = None,
                      max_retries: Optional[int] = None) -> int:
        """
        Queue a job and publish its Started notification.

        Args:
            owner_id: Owner of the job
            job_input: Typed input, or a mapping / JSON document with a ``type`` field
            priority: ``JobPriority`` or an int in 1..10 (NORMAL if None)
            max_retries: Retry budget (``config.default_retries`` if None)

        Returns:
            int: The new job id

        Raises:
            ValidationError: If the input, owner, priority or retry budget is invalid
        """
        if not owner_id or not str(owner_id).strip():
            raise ValidationError("Job owner is required")
        payload = parse_job_input(job_input)
        try:
            priority_value = resolve_priority(priority)
        except (TypeError, ValueError) as e:
            raise ValidationError(str(e)) from e
        if max_retries is None:
            max_retries = self.config.default_retries

        job_id = await self.store.enqueue(owner_id, payload.job_type, payload, priority_value, max_retries)
        logger.info(f"Job queued: {job_id} ({payload.job_type.value}) for owner {owner_id}")

        job = await self.store.get(job_id)
        await self.publisher.publish(job, LifecycleEvent.STARTED)
        return job_id

    async def get(self, job_id: int) -> Job:
        return await self.store.get(job_id)

    async def list_jobs(self, owner_id: str, limit: int = 20, offset: int = 0) -> List[Job]:
        return await self.store.list_by_owner(owner_id, limit, offset)

    async def list_active_jobs(self, owner_id: str) -> List[Job]:
        return await self.store.list_active_by_owner(owner_id)

    async def cancel(self, job_id: int) -> Job:
        """
        Cancel a QUEUED, RUNNING or RETRYING job.

        A running job's work is not interrupted; its eventual outcome is
        discarded because the row is no longer RUNNING.

        Raises:
            NotFoundError: For unknown ids
            InvalidStateTransition: If the job is already terminal
        """
        job = await self.store.mark_cancelled(job_id)
        logger.info(f"Job cancelled: {job_id} ({job.type.value})")
        await self.publisher.publish(job, LifecycleEvent.CANCELLED)
        return job

    async def get_statistics(self, owner_id: Optional[str] = None) -> JobStatistics:
        return await self.statistics.collect(owner_id)

    async def list_notifications(self, owner_id: str, limit: int = 20, offset: int = 0) -> List[Notification]:
        return await self.store.list_notifications(owner_id, limit, offset)

    async def run_cleanup(self) -> RetentionReport:
        """Run the retention sweep immediately"""
        return await self.sweeper.run_once()

    def estimated_completion(self, job: Job) -> Optional[datetime.datetime]:
        """Expected finish time of a RUNNING job, from its processor's estimate"""
        if job.status != JobStatus.RUNNING or job.started_at is None:
            return None
        return job.started_at + self.registry.estimated_duration(job.input)

