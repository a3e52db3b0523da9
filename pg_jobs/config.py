"""
Configuration for the PG Jobs engine.

All durations are in seconds. ``JobConfig.from_env`` reads ``PG_JOBS_<FIELD>``
variables (e.g. ``PG_JOBS_MAX_CONCURRENT_JOBS=5``), falling back to the
defaults below.
"""

import os
from dataclasses import dataclass, fields
from datetime import timedelta
from typing import Mapping, Optional, Tuple

from .job_types import JobStatus

ENV_PREFIX = "PG_JOBS_"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass
class JobConfig:
    """Complete configuration for the job manager"""
    max_concurrent_jobs: int = 3
    default_retries: int = 3
    retry_delay: float = 5.0                    # Fixed backoff between attempts
    job_timeout: float = 30 * 60.0              # 30 minutes per attempt
    cleanup_interval: float = 60 * 60.0         # How often the retention sweep runs
    max_job_age: float = 7 * 24 * 60 * 60.0     # Terminal jobs older than this are deleted
    poll_interval: float = 2.0                  # Scheduler tick interval
    max_dispatches_per_tick: int = 1
    shutdown_timeout: float = 30.0              # Grace period for in-flight jobs on stop
    completed_dismiss_after: float = 5 * 60.0
    cancelled_dismiss_after: float = 2 * 60.0
    recover_orphans_on_start: bool = True
    retention_statuses: Tuple[JobStatus, ...] = (JobStatus.COMPLETED, JobStatus.FAILED)

    def __post_init__(self):
        """Validate ranges and normalise retention statuses"""
        for name in ("max_concurrent_jobs", "max_dispatches_per_tick"):
            if getattr(self, name) < 1:
                raise ValueError(f"'{name}' must be at least 1, got {getattr(self, name)}")
        if self.default_retries < 0:
            raise ValueError(f"'default_retries' cannot be negative, got {self.default_retries}")
        for name in ("retry_delay", "max_job_age", "shutdown_timeout",
                     "completed_dismiss_after", "cancelled_dismiss_after"):
            if getattr(self, name) < 0:
                raise ValueError(f"'{name}' cannot be negative, got {getattr(self, name)}")
        for name in ("job_timeout", "cleanup_interval", "poll_interval"):
            if getattr(self, name) <= 0:
                raise ValueError(f"'{name}' must be positive, got {getattr(self, name)}")

        statuses = tuple(JobStatus(s) for s in self.retention_statuses)
        live = [s.value for s in statuses if not s.is_terminal]
        if live:
            raise ValueError(f"Retention can only delete terminal jobs, got {live}")
        self.retention_statuses = statuses

    @property
    def max_job_age_delta(self) -> timedelta:
        return timedelta(seconds=self.max_job_age)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> 'JobConfig':
        """
        Build a config from ``PG_JOBS_*`` environment variables.

        Args:
            environ: Mapping to read from (defaults to ``os.environ``)
            **overrides: Explicit values that win over the environment

        Raises:
            ValueError: If a variable cannot be parsed or a value is out of range
        """
        environ = os.environ if environ is None else environ
        values = {}
        for f in fields(cls):
            raw = environ.get(f"{ENV_PREFIX}{f.name.upper()}")
            if raw is None or raw.strip() == "":
                continue
            values[f.name] = _parse_value(f.name, raw.strip(), f.type)
        values.update(overrides)
        return cls(**values)


def _parse_value(name: str, raw: str, annotation):
    try:
        if annotation is bool or annotation == "bool":
            lowered = raw.lower()
            if lowered in _TRUE_VALUES:
                return True
            if lowered in _FALSE_VALUES:
                return False
            raise ValueError(f"not a boolean: {raw!r}")
        if annotation is int or annotation == "int":
            return int(raw)
        if annotation is float or annotation == "float":
            return float(raw)
        # Tuple[JobStatus, ...]
        return tuple(JobStatus(part.strip()) for part in raw.split(",") if part.strip())
    except ValueError as e:
        raise ValueError(f"Invalid value for {ENV_PREFIX}{name.upper()}: {e}") from e
