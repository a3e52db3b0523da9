"""
Job priority levels for PG Jobs.

Lower priority numbers indicate higher priority (claimed first). The store
keeps the raw integer, so callers may also pass any value in ``1..10``.
"""

from enum import Enum
from typing import Union

# Module-level constants (created once at import time)
_PRIORITY_TO_DB = {
    "urgent": 1,
    "high": 3,
    "normal": 5,
    "low": 8
}

_DB_TO_PRIORITY = {
    1: "URGENT",
    3: "HIGH",
    5: "NORMAL",
    8: "LOW"
}

MIN_PRIORITY_VALUE = 1
MAX_PRIORITY_VALUE = 10


class JobPriority(Enum):
    """
    Job priority levels for scheduling.

    Jobs are claimed in ascending priority order: 1 -> 3 -> 5 -> 8.

    Attributes:
        URGENT: Highest priority (value: 1) - claimed first
        HIGH: High priority (value: 3)
        NORMAL: Default priority (value: 5)
        LOW: Low priority (value: 8) - background work, claimed last

    Example:
        >>> job_id = await manager.enqueue(
        ...     "user-1",
        ...     {"type": "serp_tracking", "domain": "example.com", "keywords": ["seo"]},
        ...     priority=JobPriority.URGENT,
        ... )
    """

    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def db_value(self) -> int:
        """
        Get the database integer value for this priority level.

        Returns:
            int: Database priority value (1, 3, 5, or 8)
        """
        return _PRIORITY_TO_DB[self.value]

    @classmethod
    def from_db_value(cls, db_value: int) -> 'JobPriority':
        """
        Convert a database integer value back to the nearest named level.

        Exact matches map to their member; other values in range fall back to
        the closest more-urgent level, and anything unknown maps to NORMAL.
        """
        member_name = _DB_TO_PRIORITY.get(db_value)
        if member_name is not None:
            return cls[member_name]
        if isinstance(db_value, int) and MIN_PRIORITY_VALUE <= db_value <= MAX_PRIORITY_VALUE:
            candidates = [value for value in _DB_TO_PRIORITY if value <= db_value]
            return cls[_DB_TO_PRIORITY[max(candidates)]]
        return cls.NORMAL

    def __str__(self) -> str:
        return self.value

    def __repr__(self) -> str:
        return f"<JobPriority.{self.name}: {self.value} (db_value={self.db_value})>"


def resolve_priority(priority: Union['JobPriority', int, None]) -> int:
    """Normalise a priority argument to the integer stored on the job row"""
    if priority is None:
        return JobPriority.NORMAL.db_value
    if isinstance(priority, JobPriority):
        return priority.db_value
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise TypeError(f"Expected JobPriority or int, got {type(priority)}")
    if not MIN_PRIORITY_VALUE <= priority <= MAX_PRIORITY_VALUE:
        raise ValueError(
            f"Priority must be between {MIN_PRIORITY_VALUE} and {MAX_PRIORITY_VALUE}, got {priority}"
        )
    return priority
