"""
Retry decisions for failed job attempts.

A job is retried while ``retry_count < max_retries``; a job created with
``max_retries = N`` therefore runs at most ``N + 1`` times. The delay before
the next attempt is fixed by default, and any ``backoff`` callable taking
``(retry_count, base_delay)`` can replace it without changing the decision
shape.
"""

import datetime
from dataclasses import dataclass
from datetime import UTC, timedelta
from typing import Callable, Optional

Backoff = Callable[[int, float], float]
Clock = Callable[[], datetime.datetime]


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(UTC)


def fixed_backoff(retry_count: int, base_delay: float) -> float:
    return base_delay


def exponential_backoff(cap: float = 300.0) -> Backoff:
    """Doubling delay per attempt (``base * 2**retry_count``), capped at ``cap`` seconds"""
    def backoff(retry_count: int, base_delay: float) -> float:
        return min(base_delay * (2 ** retry_count), cap)
    return backoff


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    next_retry_at: Optional[datetime.datetime] = None
    delay: Optional[float] = None

    @classmethod
    def give_up(cls) -> 'RetryDecision':
        return cls(retry=False)


def decide_retry(retry_count: int,
                 max_retries: int,
                 base_delay: float,
                 now: Optional[datetime.datetime] = None,
                 backoff: Optional[Backoff] = None) -> RetryDecision:
    """
    Decide whether a failed attempt should be retried.

    Args:
        retry_count: Failed attempts recorded before this one
        max_retries: Retry budget of the job
        base_delay: Configured retry delay in seconds
        now: Reference time (defaults to the current UTC time)
        backoff: Delay function, defaults to a fixed delay

    Returns:
        RetryDecision: ``retry=True`` with ``next_retry_at`` set, or ``retry=False``
    """
    if retry_count >= max_retries:
        return RetryDecision.give_up()
    delay = (backoff or fixed_backoff)(retry_count, base_delay)
    now = now or utcnow()
    return RetryDecision(retry=True, next_retry_at=now + timedelta(seconds=delay), delay=delay)


class RetryPolicy:
    """Binds the configured delay, backoff and clock for the scheduler"""

    def __init__(self, base_delay: float, backoff: Optional[Backoff] = None, clock: Clock = utcnow):
        self.base_delay = base_delay
        self.backoff = backoff or fixed_backoff
        self.clock = clock

    def decide(self, retry_count: int, max_retries: int) -> RetryDecision:
        return decide_retry(retry_count, max_retries, self.base_delay,
                            now=self.clock(), backoff=self.backoff)
