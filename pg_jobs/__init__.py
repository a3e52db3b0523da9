from .config import JobConfig
from .errors import (
    ExecutionError,
    InvalidStateTransition,
    JobEngineError,
    JobTimeoutError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from .job_priority import JobPriority
from .job_types import Job, JobStatus, LifecycleEvent, Notification, NotificationType
from .manager import JobManager
from .payloads import (
    CompetitorMonitoringInput,
    ContentPerformanceTrackingInput,
    JobType,
    PerformanceAnalysisInput,
    SerpTrackingInput,
    WebsiteCrawlInput,
)
from .processors import JobProcessor, ProcessorRegistry
from .retry_policy import RetryDecision, RetryPolicy, decide_retry, exponential_backoff, fixed_backoff
from .scheduler import Scheduler
from .store import InMemoryJobStore, JobStore, PostgresJobStore

__version__ = "0.1.0"

__all__ = [
    "CompetitorMonitoringInput",
    "ContentPerformanceTrackingInput",
    "ExecutionError",
    "InMemoryJobStore",
    "InvalidStateTransition",
    "Job",
    "JobConfig",
    "JobEngineError",
    "JobManager",
    "JobPriority",
    "JobProcessor",
    "JobStatus",
    "JobStore",
    "JobTimeoutError",
    "JobType",
    "LifecycleEvent",
    "NotFoundError",
    "Notification",
    "NotificationType",
    "PerformanceAnalysisInput",
    "PersistenceError",
    "PostgresJobStore",
    "ProcessorRegistry",
    "RetryDecision",
    "RetryPolicy",
    "Scheduler",
    "SerpTrackingInput",
    "ValidationError",
    "WebsiteCrawlInput",
    "decide_retry",
    "exponential_backoff",
    "fixed_backoff",
]
