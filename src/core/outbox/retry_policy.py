"""Retry policy for failed outbox deliveries."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional


class RetryOutcome(str, Enum):
    ELIGIBLE = "eligible"
    BACKOFF = "backoff"
    DEAD = "dead"


@dataclass(frozen=True)
class RetryDecision:
    outcome: RetryOutcome
    retry_at: Optional[datetime] = None

    @property
    def eligible(self) -> bool:
        return self.outcome is RetryOutcome.ELIGIBLE

    @property
    def dead(self) -> bool:
        return self.outcome is RetryOutcome.DEAD


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with an upper bound and a hard retry cap.

    Pure: every answer is derived from the arguments, so the dispatcher and
    tests can ask it about any (retry_count, max_retries, elapsed) triple.
    """

    base_seconds: float = 5.0
    multiplier: float = 2.0
    cap_seconds: float = 900.0

    def __post_init__(self) -> None:
        if self.base_seconds < 0 or self.cap_seconds < 0:
            raise ValueError("backoff seconds must be non-negative")
        if self.multiplier < 1:
            raise ValueError("backoff multiplier must be >= 1")

    def backoff_seconds(self, retry_count: int) -> float:
        """Delay before the next attempt after ``retry_count`` failures."""
        if retry_count <= 0:
            return 0.0
        try:
            delay = self.base_seconds * (self.multiplier ** (retry_count - 1))
        except OverflowError:
            delay = self.cap_seconds
        return float(min(delay, self.cap_seconds))

    def next_attempt_at(self, retry_count: int, failed_at: datetime) -> datetime:
        return failed_at + timedelta(seconds=self.backoff_seconds(retry_count))

    def decide(
        self,
        retry_count: int,
        max_retries: int,
        last_failure_at: Optional[datetime],
        now: datetime,
    ) -> RetryDecision:
        if retry_count >= max_retries:
            return RetryDecision(RetryOutcome.DEAD)
        if last_failure_at is None:
            return RetryDecision(RetryOutcome.ELIGIBLE)
        retry_at = self.next_attempt_at(retry_count, last_failure_at)
        if now >= retry_at:
            return RetryDecision(RetryOutcome.ELIGIBLE, retry_at)
        return RetryDecision(RetryOutcome.BACKOFF, retry_at)
