from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from ..errors import ValidationError
from ..job_priority import MAX_PRIORITY_VALUE, MIN_PRIORITY_VALUE
from ..job_types import Job, JobStatus, Notification, NotificationDraft
from ..payloads import BaseJobInput, JobType
from ..retry_policy import RetryDecision

DEFAULT_RETENTION_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class JobStore(ABC):
    """
    Durable record of jobs and their lifecycle notifications.

    Every status-changing operation is atomic with respect to concurrent
    callers. ``mark_completed`` and ``mark_failed_or_retrying`` only apply while
    the job is still RUNNING and return ``None`` otherwise, so a job cancelled
    mid-flight keeps its CANCELLED status.
    """

    async def initialize(self) -> None:
        """Prepare the backing storage (create tables, indexes)"""

    async def close(self) -> None:
        """Release backend resources"""

    @abstractmethod
    async def enqueue(self,
                      owner_id: str,
                      job_type: JobType,
                      job_input: BaseJobInput,
                      priority: int,
                      max_retries: int) -> int:
        """
        Persist a new QUEUED job.

        Raises:
            ValidationError: If the owner is empty, ``max_retries`` is negative
                or the input does not belong to ``job_type``
        """

    @abstractmethod
    async def get(self, job_id: int) -> Job:
        """Raises NotFoundError for unknown ids"""

    @abstractmethod
    async def list_by_owner(self, owner_id: str, limit: int = 20, offset: int = 0) -> List[Job]:
        """Owner's jobs, newest first"""

    @abstractmethod
    async def list_active_by_owner(self, owner_id: str) -> List[Job]:
        """Owner's RUNNING jobs, newest first"""

    @abstractmethod
    async def list_jobs(self, owner_id: Optional[str] = None) -> List[Job]:
        """Snapshot of all jobs (optionally for one owner), newest first"""

    @abstractmethod
    async def list_running(self) -> List[Job]:
        pass

    @abstractmethod
    async def update_progress(self,
                              job_id: int,
                              progress: int,
                              step: Optional[str] = None,
                              metadata: Optional[Dict[str, Any]] = None) -> bool:
        """
        Record progress for a RUNNING job.

        Stored progress never decreases and stays below 100 until the job
        completes. Returns False when the job is not RUNNING.

        Raises:
            ValidationError: If ``progress`` is outside ``0..100``
            NotFoundError: For unknown ids
        """

    @abstractmethod
    async def claim_next_eligible(self, max_running: Optional[int] = None) -> Optional[Job]:
        """
        Atomically pick the next eligible job and mark it RUNNING.

        QUEUED jobs come first, ordered by ``(priority, created_at, id)``; then
        RETRYING jobs whose ``next_retry_at`` has passed, ordered by
        ``(priority, next_retry_at, id)``. When ``max_running`` is given nothing
        is claimed while that many jobs are already RUNNING.
        """

    @abstractmethod
    async def mark_completed(self, job_id: int, result: Dict[str, Any]) -> Optional[Job]:
        pass

    @abstractmethod
    async def mark_failed_or_retrying(self,
                                      job_id: int,
                                      error_message: str,
                                      decision: RetryDecision) -> Optional[Job]:
        pass

    @abstractmethod
    async def mark_cancelled(self, job_id: int) -> Job:
        """
        Raises:
            NotFoundError: For unknown ids
            InvalidStateTransition: If the job is already terminal
        """

    @abstractmethod
    async def count_running(self) -> int:
        pass

    @abstractmethod
    async def delete_terminal_older_than(self,
                                         cutoff: datetime,
                                         statuses: Iterable[JobStatus] = DEFAULT_RETENTION_STATUSES) -> int:
        """
        Delete terminal jobs whose ``completed_at`` is before ``cutoff``.

        Every notification of a deleted job is deleted with it, including
        ones that never auto-dismiss (Failed, Retrying).
        """

    @abstractmethod
    async def create_notification(self, draft: NotificationDraft) -> Notification:
        pass

    @abstractmethod
    async def list_notifications(self, owner_id: str, limit: int = 20, offset: int = 0) -> List[Notification]:
        pass

    @abstractmethod
    async def delete_expired_notifications(self, now: datetime) -> int:
        """Delete auto-dismissing notifications whose ``dismiss_at`` has passed"""


def validate_new_job(owner_id: str,
                     job_type: JobType,
                     job_input: BaseJobInput,
                     priority: int,
                     max_retries: int) -> None:
    """Shared enqueue checks for every backend"""
    if not owner_id or not str(owner_id).strip():
        raise ValidationError("Job owner is required")
    if isinstance(max_retries, bool) or not isinstance(max_retries, int) or max_retries < 0:
        raise ValidationError(f"max_retries must be a non-negative integer, got {max_retries!r}")
    if not MIN_PRIORITY_VALUE <= priority <= MAX_PRIORITY_VALUE:
        raise ValidationError(f"Priority must be between {MIN_PRIORITY_VALUE} and {MAX_PRIORITY_VALUE}, got {priority}")
    if not isinstance(job_input, BaseJobInput):
        raise ValidationError(f"Job input must be a validated payload, got {type(job_input).__name__}")
    if job_input.job_type != JobType(job_type):
        raise ValidationError(
            f"Input of type '{job_input.job_type.value}' cannot be queued as '{JobType(job_type).value}'"
        )


def check_progress(progress: int) -> None:
    if isinstance(progress, bool) or not isinstance(progress, int) or not 0 <= progress <= 100:
        raise ValidationError(f"Progress must be an integer between 0 and 100, got {progress!r}")


def clamp_progress(current: int, reported: int) -> int:
    """Stored progress never decreases and only reaches 100 on completion"""
    return max(current, min(reported, 99))
