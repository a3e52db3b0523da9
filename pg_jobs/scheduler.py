import asyncio
import functools
import logging
from typing import Dict, List, Optional, Set, Tuple

from .config import JobConfig
from .errors import ExecutionError, PersistenceError
from .executor import ExecutionOutcome, Executor
from .job_types import Job, LifecycleEvent
from .notifications import NotificationPublisher
from .processors import ProcessorRegistry
from .retry_policy import RetryPolicy, utcnow
from .store.base import JobStore

logger = logging.getLogger(__name__)

ORPHANED_JOB_ERROR = "Job interrupted by worker restart"


class Scheduler:
    """
    Polling control loop that moves jobs through their lifecycle.

    Every ``poll_interval`` seconds a tick claims eligible jobs (up to
    ``max_dispatches_per_tick``) while fewer than ``max_concurrent_jobs`` are
    RUNNING, and runs each one as a tracked asyncio task. A tick that starts
    while the previous one is still selecting is skipped.
    """

    def __init__(self,
                 store: JobStore,
                 registry: ProcessorRegistry,
                 config: Optional[JobConfig] = None,
                 publisher: Optional[NotificationPublisher] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 clock=utcnow):
        """
        Args:
            store: Job store shared with the enqueue side
            registry: Processors for each job type
            config: Engine configuration (defaults to ``JobConfig()``)
            publisher: Notification publisher (built from ``config`` if None)
            retry_policy: Retry policy (fixed ``retry_delay`` backoff if None)
            clock: Callable returning the current UTC time
        """
        self.store = store
        self.registry = registry
        self.config = config or JobConfig()
        self.clock = clock
        self.executor = Executor(store)
        self.publisher = publisher or NotificationPublisher(
            store,
            completed_dismiss_after=self.config.completed_dismiss_after,
            cancelled_dismiss_after=self.config.cancelled_dismiss_after,
            clock=clock,
        )
        self.retry_policy = retry_policy or RetryPolicy(self.config.retry_delay, clock=clock)

        self.is_running = False
        self.is_shutting_down = False

        self.active_jobs: Set[int] = set()
        self.active_tasks: Set[asyncio.Task] = set()
        # Finished jobs whose outcome could not be written yet
        self.unsettled_jobs: Dict[int, Tuple[Job, ExecutionOutcome]] = {}
        self._tick_lock = asyncio.Lock()
        self.poll_task: Optional[asyncio.Task] = None

        logger.debug(f"Scheduler initialized: max_concurrent={self.config.max_concurrent_jobs}, "
                     f"poll_interval={self.config.poll_interval}s, job_timeout={self.config.job_timeout}s")

    async def start(self):
        """Recover orphaned jobs and start the polling loop"""
        if self.is_running:
            return

        self.is_running = True
        self.is_shutting_down = False

        try:
            if self.config.recover_orphans_on_start:
                await self.recover_orphaned_jobs()
            self.poll_task = asyncio.create_task(self._poll_loop())
            logger.debug("Scheduler started")
        except Exception as e:
            logger.error(f"Error starting scheduler: {e}")
            self.is_running = False
            raise

    async def stop(self, timeout: Optional[float] = None):
        """
        Stop ticking and wait for in-flight jobs.

        Jobs still running after ``timeout`` seconds (``shutdown_timeout`` by
        default) are cancelled and stay RUNNING in the store until the next
        start recovers them.
        """
        if not self.is_running or self.is_shutting_down:
            return

        logger.debug("Gracefully stopping scheduler...")
        self.is_shutting_down = True
        self.is_running = False

        if self.poll_task is not None and not self.poll_task.done():
            self.poll_task.cancel()
            await asyncio.gather(self.poll_task, return_exceptions=True)
        self.poll_task = None

        timeout = self.config.shutdown_timeout if timeout is None else timeout
        if self.active_tasks:
            logger.debug(f"Waiting for {len(self.active_tasks)} active jobs to complete...")
            _, pending = await asyncio.wait(set(self.active_tasks), timeout=timeout)
            if pending:
                logger.warning(f"Cancelling {len(pending)} jobs still running after {timeout}s: "
                               f"{sorted(self.active_jobs)}")
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        self.is_shutting_down = False
        logger.debug("Scheduler stopped gracefully")

    async def _poll_loop(self):
        while self.is_running and not self.is_shutting_down:
            await self.tick()
            await asyncio.sleep(self.config.poll_interval)

    async def tick(self) -> List[Job]:
        """
        Run one scheduling pass.

        Returns:
            List[Job]: Jobs dispatched by this tick (empty when skipped)
        """
        if self._tick_lock.locked():
            logger.debug("Previous tick still selecting jobs, skipping")
            return []

        async with self._tick_lock:
            try:
                await self._settle_pending()
                return await self._dispatch_eligible()
            except PersistenceError as e:
                logger.error(f"Job store unavailable, abandoning tick: {e}")
            except Exception as e:
                logger.error(f"Error in scheduler tick: {e}")
            return []

    async def _dispatch_eligible(self) -> List[Job]:
        cap = self.config.max_concurrent_jobs
        running = await self.store.count_running()
        if running >= cap:
            logger.debug(f"At capacity ({running}/{cap} running)")
            return []

        dispatched = []
        for _ in range(min(self.config.max_dispatches_per_tick, cap - running)):
            if self.is_shutting_down:
                break
            job = await self.store.claim_next_eligible(max_running=cap)
            if job is None:
                break
            self._dispatch(job)
            dispatched.append(job)

        if dispatched:
            logger.debug(f"Dispatched {len(dispatched)} jobs: {[job.id for job in dispatched]}")
        return dispatched

    def _dispatch(self, job: Job):
        task = asyncio.create_task(self._run_job(job), name=f"pg-jobs-{job.id}")
        self.active_jobs.add(job.id)
        self.active_tasks.add(task)
        task.add_done_callback(functools.partial(self._on_job_done, job.id))

    def _on_job_done(self, job_id: int, task: asyncio.Task):
        self.active_tasks.discard(task)
        self.active_jobs.discard(job_id)
        if task.cancelled():
            logger.warning(f"Execution of job {job_id} was cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Critical error in job {job_id} execution: {exc}")

    async def _run_job(self, job: Job):
        processor = self.registry.get(job.type)
        if processor is None:
            outcome = ExecutionOutcome(
                error=ExecutionError(f"No processor registered for job type {job.type.value}")
            )
        else:
            outcome = await self.executor.run(job, processor, self.config.job_timeout)
        await self._settle(job, outcome)

    async def _settle(self, job: Job, outcome: ExecutionOutcome) -> bool:
        """
        Write a finished job's outcome to the store.

        If the store rejects the write the outcome is kept and retried on the
        next tick, so the row does not stay RUNNING without a task behind it.
        """
        try:
            if outcome.succeeded:
                await self._handle_job_success(job, outcome.result)
            else:
                await self._handle_job_failure(job, outcome.error_message)
        except Exception as e:
            logger.error(f"Failed to record outcome of job {job.id}, retrying on next tick: {e}")
            self.unsettled_jobs[job.id] = (job, outcome)
            return False
        self.unsettled_jobs.pop(job.id, None)
        return True

    async def _settle_pending(self):
        for job, outcome in list(self.unsettled_jobs.values()):
            await self._settle(job, outcome)

    async def _handle_job_success(self, job: Job, result) -> Optional[Job]:
        updated = await self.store.mark_completed(job.id, result)
        if updated is None:
            logger.warning(f"Job {job.id} completed but is no longer running; result discarded")
            return None
        logger.debug(f"Job {job.id} completed successfully")
        await self.publisher.publish(updated, LifecycleEvent.COMPLETED)
        return updated

    async def _handle_job_failure(self, job: Job, error_message: str) -> Optional[Job]:
        """Record a failed attempt and schedule a retry if the budget allows"""
        decision = self.retry_policy.decide(job.retry_count, job.max_retries)
        updated = await self.store.mark_failed_or_retrying(job.id, error_message, decision)
        if updated is None:
            logger.warning(f"Job {job.id} failed but is no longer running: {error_message}")
            return None

        if decision.retry:
            logger.warning(f"Job {job.id} failed (attempt {updated.retry_count}/{job.max_retries + 1}), "
                           f"retrying at {decision.next_retry_at}: {error_message}")
            await self.publisher.publish(updated, LifecycleEvent.RETRYING)
        else:
            logger.error(f"Job {job.id} permanently failed after {updated.retry_count} attempts: {error_message}")
            await self.publisher.publish(updated, LifecycleEvent.FAILED)
        return updated

    async def recover_orphaned_jobs(self) -> int:
        """
        Route jobs left RUNNING by a previous process through the failure path.

        Returns:
            int: Number of jobs moved to RETRYING or FAILED
        """
        try:
            orphans = await self.store.list_running()
        except Exception as e:
            logger.error(f"Failed to recover orphaned jobs: {e}")
            return 0

        recovered = 0
        for job in orphans:
            if job.id in self.active_jobs or job.id in self.unsettled_jobs:
                continue
            try:
                if await self._handle_job_failure(job, ORPHANED_JOB_ERROR) is not None:
                    recovered += 1
            except Exception as e:
                logger.error(f"Failed to recover orphaned job {job.id}: {e}")

        if recovered:
            logger.warning(f"Recovered {recovered} orphaned jobs from a previous run")
        else:
            logger.debug("No orphaned jobs found during startup")
        return recovered

    async def wait_for_idle(self, timeout: Optional[float] = None):
        """Wait until every dispatched job has finished"""
        async def drain():
            while self.active_tasks:
                await asyncio.wait(set(self.active_tasks))
        await asyncio.wait_for(drain(), timeout=timeout)

    @property
    def active_count(self) -> int:
        return len(self.active_tasks)
