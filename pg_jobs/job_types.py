from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from .job_priority import JobPriority
from .payloads import BaseJobInput, JobType

ERROR_MESSAGE_LIMIT = 1000


class JobStatus(Enum):
    QUEUED = 'queued'
    RUNNING = 'running'
    RETRYING = 'retrying'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[JobStatus] = frozenset({
    JobStatus.COMPLETED,
    JobStatus.FAILED,
    JobStatus.CANCELLED,
})

CANCELLABLE_STATUSES: FrozenSet[JobStatus] = frozenset({
    JobStatus.QUEUED,
    JobStatus.RUNNING,
    JobStatus.RETRYING,
})

ALLOWED_TRANSITIONS = {
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset({
        JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.RETRYING, JobStatus.CANCELLED,
    }),
    JobStatus.RETRYING: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    """Whether the job state machine allows ``current -> target``"""
    return target in ALLOWED_TRANSITIONS[current]


class NotificationType(Enum):
    JOB_STARTED = 'job_started'
    JOB_COMPLETED = 'job_completed'
    JOB_FAILED = 'job_failed'
    JOB_RETRYING = 'job_retrying'
    JOB_CANCELLED = 'job_cancelled'


class LifecycleEvent(Enum):
    """Job transitions that produce a user-facing notification"""
    STARTED = 'started'
    COMPLETED = 'completed'
    FAILED = 'failed'
    RETRYING = 'retrying'
    CANCELLED = 'cancelled'

    @property
    def notification_type(self) -> NotificationType:
        return NotificationType(f"job_{self.value}")


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def truncate_error(message: str) -> str:
    return (message or "Unknown error")[:ERROR_MESSAGE_LIMIT]


@dataclass
class Job:
    id: int
    owner_id: str
    type: JobType
    status: JobStatus
    priority: int
    input: BaseJobInput
    max_retries: int
    created_at: datetime
    updated_at: datetime
    progress: int = 0
    current_step: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    retry_count: int = 0
    next_retry_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def priority_level(self) -> JobPriority:
        return JobPriority.from_db_value(self.priority)

    @property
    def duration(self) -> Optional[float]:
        """Seconds between the last start and completion, if both are known"""
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        """Stable JSON shape consumed by the API and live-update channels"""
        return {
            "id": self.id,
            "type": self.type.value,
            "status": self.status.value,
            "priority": self.priority,
            "progress": self.progress,
            "currentStep": self.current_step,
            "input": self.input.model_dump(mode="json"),
            "result": self.result,
            "error": self.error,
            "metadata": self.metadata,
            "retryCount": self.retry_count,
            "maxRetries": self.max_retries,
            "nextRetryAt": _iso(self.next_retry_at),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "startedAt": _iso(self.started_at),
            "completedAt": _iso(self.completed_at),
        }


@dataclass
class Notification:
    id: int
    owner_id: str
    job_id: int
    type: NotificationType
    title: str
    message: str
    created_at: datetime
    action_url: Optional[str] = None
    action_text: Optional[str] = None
    auto_dismiss: bool = False
    dismiss_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "jobId": self.job_id,
            "type": self.type.value,
            "title": self.title,
            "message": self.message,
            "actionUrl": self.action_url,
            "actionText": self.action_text,
            "autoDismiss": self.auto_dismiss,
            "dismissAt": _iso(self.dismiss_at),
            "createdAt": _iso(self.created_at),
        }


@dataclass(frozen=True)
class NotificationDraft:
    """Notification fields produced by the publisher before the store assigns an id"""
    owner_id: str
    job_id: int
    type: NotificationType
    title: str
    message: str
    action_url: Optional[str] = None
    action_text: Optional[str] = None
    auto_dismiss: bool = False
    dismiss_at: Optional[datetime] = None
