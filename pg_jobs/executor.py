"""
Runs a single job attempt.

The executor never changes a job's status itself; it returns an
``ExecutionOutcome`` and leaves the transition to the scheduler.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .errors import ExecutionError, JobEngineError, JobTimeoutError, ValidationError
from .job_types import Job
from .payloads import serialize_job_result
from .processors import JobProcessor
from .store.base import JobStore

logger = logging.getLogger(__name__)


@dataclass
class ExecutionOutcome:
    result: Optional[Dict[str, Any]] = None
    error: Optional[JobEngineError] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @property
    def error_message(self) -> Optional[str]:
        return str(self.error) if self.error is not None else None


class ProgressReporter:
    """Progress callback handed to processors; forwards updates to the store"""

    def __init__(self, store: JobStore, job_id: int):
        self.store = store
        self.job_id = job_id

    async def __call__(self,
                       progress: int,
                       step: Optional[str] = None,
                       metadata: Optional[Dict[str, Any]] = None) -> bool:
        try:
            return await self.store.update_progress(self.job_id, progress, step, metadata)
        except ValidationError:
            raise
        except Exception as e:
            logger.error(f"Failed to record progress for job {self.job_id}: {e}")
            return False


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class Executor:

    def __init__(self, store: JobStore):
        self.store = store

    async def run(self, job: Job, processor: JobProcessor, timeout: float) -> ExecutionOutcome:
        """
        Execute ``processor`` for ``job`` with a hard timeout.

        On expiry the processor coroutine is cancelled and the outcome carries
        ``JobTimeoutError("Job timeout")``. Any exception raised by the processor
        becomes an ``ExecutionError``; a result that cannot be stored becomes a
        ``ValidationError``.
        """
        progress = ProgressReporter(self.store, job.id)
        logger.debug(f"Executing job {job.id} ({job.type.value}) [priority={job.priority}]")
        try:
            raw_result = await asyncio.wait_for(processor.process(job.input, progress), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Job {job.id} timed out after {timeout}s")
            return ExecutionOutcome(error=JobTimeoutError())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"Job {job.id} raised {type(e).__name__}: {e}")
            return ExecutionOutcome(error=ExecutionError(_describe(e), cause=e))

        try:
            result = serialize_job_result(job.type, raw_result)
        except ValidationError as e:
            return ExecutionOutcome(error=e)
        return ExecutionOutcome(result=result)
