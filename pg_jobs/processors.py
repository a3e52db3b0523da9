"""
Work function registry for PG Jobs.

The engine treats the work done inside a job as opaque. Each job type is
served by a ``JobProcessor``; the registry maps job types to processors and is
handed to the scheduler at construction time.

Processors can be registered as classes or as plain async functions:

    registry = ProcessorRegistry()

    @registry.processor(JobType.SERP_TRACKING)
    async def track_serp(job_input, progress):
        await progress(50, "Checking rankings...")
        return {"rankings": []}
"""

import inspect
import logging
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Iterator, Optional, Protocol

from .payloads import (
    BaseJobInput,
    JobType,
    SerpTrackingInput,
    WebsiteCrawlInput,
)

logger = logging.getLogger(__name__)


class ProgressCallback(Protocol):
    async def __call__(self,
                       progress: int,
                       step: Optional[str] = None,
                       metadata: Optional[Dict[str, Any]] = None) -> bool: ...


ProcessFunction = Callable[[BaseJobInput, ProgressCallback], Awaitable[Any]]

_FIXED_ESTIMATES = {
    JobType.PERFORMANCE_ANALYSIS: timedelta(minutes=1),
    JobType.COMPETITOR_MONITORING: timedelta(minutes=2),
    JobType.CONTENT_PERFORMANCE_TRACKING: timedelta(seconds=90),
}


def default_estimated_duration(job_input: BaseJobInput) -> timedelta:
    """Rough runtime estimate per job type, used for ``estimatedCompletion``"""
    if isinstance(job_input, WebsiteCrawlInput):
        return timedelta(seconds=30) * job_input.max_pages
    if isinstance(job_input, SerpTrackingInput):
        return timedelta(seconds=15) * len(job_input.keywords)
    return _FIXED_ESTIMATES.get(job_input.job_type, timedelta(minutes=1))


class JobProcessor(ABC):
    """Executes the work for one or more job types"""

    job_types = frozenset(JobType)

    @abstractmethod
    async def process(self, job_input: BaseJobInput, progress: ProgressCallback) -> Any:
        """
        Run the job.

        Args:
            job_input: Validated input payload
            progress: Awaitable callback ``progress(percent, step=None, metadata=None)``

        Returns:
            The job result: a mapping or pydantic model, tagged with the job type
            when it is stored.
        """

    def can_process(self, job_type: JobType) -> bool:
        return JobType(job_type) in self.job_types

    def estimated_duration(self, job_input: BaseJobInput) -> timedelta:
        return default_estimated_duration(job_input)


class FunctionProcessor(JobProcessor):
    """Adapts a bare async function to the processor interface"""

    def __init__(self,
                 job_type: JobType,
                 func: ProcessFunction,
                 estimated_duration: Optional[timedelta] = None):
        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"Expected an async function, got {type(func)}")
        self.job_types = frozenset({JobType(job_type)})
        self.func = func
        self._estimated_duration = estimated_duration

    async def process(self, job_input: BaseJobInput, progress: ProgressCallback) -> Any:
        return await self.func(job_input, progress)

    def estimated_duration(self, job_input: BaseJobInput) -> timedelta:
        if self._estimated_duration is not None:
            return self._estimated_duration
        return default_estimated_duration(job_input)

    def __repr__(self) -> str:
        return f"<FunctionProcessor {getattr(self.func, '__qualname__', self.func)!r}>"


class ProcessorRegistry:

    def __init__(self):
        self._processors: Dict[JobType, JobProcessor] = {}

    def register(self, processor: JobProcessor, job_type: Optional[JobType] = None) -> JobProcessor:
        """
        Register a processor for ``job_type``, or for every type it can process.

        A later registration for the same type replaces the earlier one.
        """
        if not isinstance(processor, JobProcessor):
            raise TypeError(f"Expected a JobProcessor, got {type(processor)}")
        job_types = [JobType(job_type)] if job_type is not None else [t for t in JobType if processor.can_process(t)]
        if not job_types:
            raise ValueError(f"{processor!r} does not handle any job type")
        for t in job_types:
            if t in self._processors:
                logger.warning(f"Replacing processor for {t.value}")
            self._processors[t] = processor
            logger.debug(f"Registered processor {processor!r} for {t.value}")
        return processor

    def register_function(self,
                          job_type: JobType,
                          func: ProcessFunction,
                          estimated_duration: Optional[timedelta] = None) -> JobProcessor:
        """Register an async ``func(job_input, progress)`` for one job type"""
        return self.register(FunctionProcessor(job_type, func, estimated_duration), job_type)

    def processor(self, job_type: JobType, estimated_duration: Optional[timedelta] = None):
        """Decorator form of ``register_function``; returns the function unchanged"""
        def decorator(func: ProcessFunction) -> ProcessFunction:
            self.register_function(job_type, func, estimated_duration)
            return func
        return decorator

    def get(self, job_type: JobType) -> Optional[JobProcessor]:
        return self._processors.get(JobType(job_type))

    def estimated_duration(self, job_input: BaseJobInput) -> timedelta:
        processor = self.get(job_input.job_type)
        if processor is None:
            return default_estimated_duration(job_input)
        return processor.estimated_duration(job_input)

    def __contains__(self, job_type) -> bool:
        return JobType(job_type) in self._processors

    def __iter__(self) -> Iterator[JobType]:
        return iter(self._processors)

    def __len__(self) -> int:
        return len(self._processors)
