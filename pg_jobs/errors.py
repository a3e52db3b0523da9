"""
Exception taxonomy for PG Jobs.

Caller-facing errors (``ValidationError``, ``NotFoundError``,
``InvalidStateTransition``) are raised synchronously by the enqueue, cancel
and query APIs. Execution errors are produced inside the executor and turned
into FAILED or RETRYING transitions by the scheduler; they never escape the
polling loop.
"""

from typing import Optional


class JobEngineError(Exception):
    """Base class for all PG Jobs errors"""


class ValidationError(JobEngineError):
    """Malformed job input, progress value or result payload"""


class NotFoundError(JobEngineError):
    """Unknown job or notification id"""

    def __init__(self, job_id):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class InvalidStateTransition(JobEngineError):
    """A status change the job state machine does not allow"""

    def __init__(self, job_id, current_status, target_status):
        self.job_id = job_id
        self.current_status = current_status
        self.target_status = target_status
        super().__init__(
            f"Cannot move job {job_id} from '{current_status}' to '{target_status}'"
        )


class ExecutionError(JobEngineError):
    """The work function raised or could not be invoked"""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class JobTimeoutError(ExecutionError, TimeoutError):
    """The work function exceeded the configured job timeout"""

    def __init__(self, message: str = "Job timeout"):
        super().__init__(message)


class PersistenceError(JobEngineError):
    """The job store is unavailable or rejected an operation"""
