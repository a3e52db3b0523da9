"""
In-process job store.

Used for development, the ``--memory`` worker mode and the unit tests. A
single ``asyncio.Lock`` serialises every operation, which gives the same
atomicity guarantees as the transactional Postgres claim within one event
loop. Rows are copied on the way in and out so callers never share state with
the store.
"""

import asyncio
import copy
import datetime
import itertools
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..errors import InvalidStateTransition, NotFoundError
from ..job_types import (
    CANCELLABLE_STATUSES,
    Job,
    JobStatus,
    Notification,
    NotificationDraft,
    truncate_error,
)
from ..payloads import BaseJobInput, JobType
from ..retry_policy import RetryDecision, utcnow
from .base import (
    DEFAULT_RETENTION_STATUSES,
    JobStore,
    check_progress,
    clamp_progress,
    validate_new_job,
)

logger = logging.getLogger(__name__)


class InMemoryJobStore(JobStore):

    def __init__(self, clock: Callable[[], datetime.datetime] = utcnow):
        self.clock = clock
        self._lock = asyncio.Lock()
        self._jobs: Dict[int, Job] = {}
        self._notifications: Dict[int, Notification] = {}
        self._job_ids = itertools.count(1)
        self._notification_ids = itertools.count(1)

    def _require(self, job_id: int) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(job_id)
        return job

    @staticmethod
    def _newest_first(jobs: Iterable[Job]) -> List[Job]:
        return sorted(jobs, key=lambda j: (j.created_at, j.id), reverse=True)

    async def enqueue(self,
                      owner_id: str,
                      job_type: JobType,
                      job_input: BaseJobInput,
                      priority: int,
                      max_retries: int) -> int:
        validate_new_job(owner_id, job_type, job_input, priority, max_retries)
        async with self._lock:
            now = self.clock()
            job_id = next(self._job_ids)
            self._jobs[job_id] = Job(
                id=job_id,
                owner_id=owner_id,
                type=JobType(job_type),
                status=JobStatus.QUEUED,
                priority=priority,
                input=job_input,
                max_retries=max_retries,
                created_at=now,
                updated_at=now,
            )
        logger.debug(f"Queued job {job_id} ({JobType(job_type).value}) for owner {owner_id}")
        return job_id

    async def get(self, job_id: int) -> Job:
        async with self._lock:
            return copy.deepcopy(self._require(job_id))

    async def list_by_owner(self, owner_id: str, limit: int = 20, offset: int = 0) -> List[Job]:
        async with self._lock:
            jobs = self._newest_first(j for j in self._jobs.values() if j.owner_id == owner_id)
            return copy.deepcopy(jobs[offset:offset + limit])

    async def list_active_by_owner(self, owner_id: str) -> List[Job]:
        async with self._lock:
            jobs = self._newest_first(
                j for j in self._jobs.values()
                if j.owner_id == owner_id and j.status == JobStatus.RUNNING
            )
            return copy.deepcopy(jobs)

    async def list_jobs(self, owner_id: Optional[str] = None) -> List[Job]:
        async with self._lock:
            jobs = self._newest_first(
                j for j in self._jobs.values() if owner_id is None or j.owner_id == owner_id
            )
            return copy.deepcopy(jobs)

    async def list_running(self) -> List[Job]:
        async with self._lock:
            jobs = [j for j in self._jobs.values() if j.status == JobStatus.RUNNING]
            return copy.deepcopy(sorted(jobs, key=lambda j: j.id))

    async def update_progress(self,
                              job_id: int,
                              progress: int,
                              step: Optional[str] = None,
                              metadata: Optional[Dict[str, Any]] = None) -> bool:
        check_progress(progress)
        async with self._lock:
            job = self._require(job_id)
            if job.status != JobStatus.RUNNING:
                logger.debug(f"Ignoring progress for job {job_id} in status {job.status.value}")
                return False
            job.progress = clamp_progress(job.progress, progress)
            if step is not None:
                job.current_step = step
            if metadata is not None:
                job.metadata = copy.deepcopy(metadata)
            job.updated_at = self.clock()
            return True

    async def claim_next_eligible(self, max_running: Optional[int] = None) -> Optional[Job]:
        async with self._lock:
            now = self.clock()
            if max_running is not None:
                running = sum(1 for j in self._jobs.values() if j.status == JobStatus.RUNNING)
                if running >= max_running:
                    return None

            queued = [j for j in self._jobs.values() if j.status == JobStatus.QUEUED]
            if queued:
                job = min(queued, key=lambda j: (j.priority, j.created_at, j.id))
            else:
                due = [
                    j for j in self._jobs.values()
                    if j.status == JobStatus.RETRYING and j.next_retry_at is not None and j.next_retry_at <= now
                ]
                if not due:
                    return None
                job = min(due, key=lambda j: (j.priority, j.next_retry_at, j.id))

            job.status = JobStatus.RUNNING
            job.started_at = now
            job.next_retry_at = None
            job.updated_at = now
            return copy.deepcopy(job)

    async def mark_completed(self, job_id: int, result: Dict[str, Any]) -> Optional[Job]:
        async with self._lock:
            job = self._require(job_id)
            if job.status != JobStatus.RUNNING:
                return None
            now = self.clock()
            job.status = JobStatus.COMPLETED
            job.progress = 100
            job.result = copy.deepcopy(result)
            job.error = None
            job.completed_at = now
            job.updated_at = now
            return copy.deepcopy(job)

    async def mark_failed_or_retrying(self,
                                      job_id: int,
                                      error_message: str,
                                      decision: RetryDecision) -> Optional[Job]:
        async with self._lock:
            job = self._require(job_id)
            if job.status != JobStatus.RUNNING:
                return None
            now = self.clock()
            job.retry_count += 1
            job.error = truncate_error(error_message)
            job.updated_at = now
            if decision.retry:
                job.status = JobStatus.RETRYING
                job.next_retry_at = decision.next_retry_at
            else:
                job.status = JobStatus.FAILED
                job.next_retry_at = None
                job.completed_at = now
            return copy.deepcopy(job)

    async def mark_cancelled(self, job_id: int) -> Job:
        async with self._lock:
            job = self._require(job_id)
            if job.status not in CANCELLABLE_STATUSES:
                raise InvalidStateTransition(job_id, job.status.value, JobStatus.CANCELLED.value)
            now = self.clock()
            job.status = JobStatus.CANCELLED
            job.next_retry_at = None
            job.completed_at = now
            job.updated_at = now
            return copy.deepcopy(job)

    async def count_running(self) -> int:
        async with self._lock:
            return sum(1 for j in self._jobs.values() if j.status == JobStatus.RUNNING)

    async def delete_terminal_older_than(self,
                                         cutoff: datetime.datetime,
                                         statuses: Iterable[JobStatus] = DEFAULT_RETENTION_STATUSES) -> int:
        statuses = {JobStatus(s) for s in statuses if JobStatus(s).is_terminal}
        async with self._lock:
            doomed = [
                job_id for job_id, job in self._jobs.items()
                if job.status in statuses and job.completed_at is not None and job.completed_at < cutoff
            ]
            for job_id in doomed:
                del self._jobs[job_id]
            # Notifications go with their job
            orphaned = [n_id for n_id, n in self._notifications.items() if n.job_id in doomed]
            for n_id in orphaned:
                del self._notifications[n_id]
            return len(doomed)

    async def create_notification(self, draft: NotificationDraft) -> Notification:
        async with self._lock:
            notification_id = next(self._notification_ids)
            notification = Notification(
                id=notification_id,
                owner_id=draft.owner_id,
                job_id=draft.job_id,
                type=draft.type,
                title=draft.title,
                message=draft.message,
                created_at=self.clock(),
                action_url=draft.action_url,
                action_text=draft.action_text,
                auto_dismiss=draft.auto_dismiss,
                dismiss_at=draft.dismiss_at if draft.auto_dismiss else None,
            )
            self._notifications[notification_id] = notification
            return copy.deepcopy(notification)

    async def list_notifications(self, owner_id: str, limit: int = 20, offset: int = 0) -> List[Notification]:
        async with self._lock:
            rows = sorted(
                (n for n in self._notifications.values() if n.owner_id == owner_id),
                key=lambda n: (n.created_at, n.id),
                reverse=True,
            )
            return copy.deepcopy(rows[offset:offset + limit])

    async def delete_expired_notifications(self, now: datetime.datetime) -> int:
        async with self._lock:
            expired = [
                n_id for n_id, n in self._notifications.items()
                if n.auto_dismiss and n.dismiss_at is not None and n.dismiss_at < now
            ]
            for n_id in expired:
                del self._notifications[n_id]
            return len(expired)
