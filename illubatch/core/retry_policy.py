"""Failure classification and requeue timing for illustration tasks."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping

from ..errors import RetryableProviderError
from ..models import Task


class RetryDecision(str, Enum):
    RETRYABLE = "retryable"
    TERMINAL = "terminal"


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    delay_seconds: float = 2.0
    delay_step_seconds: float = 2.0
    max_delay_seconds: float = 30.0
    # When off, retryable failures settle in FAILED until retried by hand.
    auto_retry: bool = True

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "RetryPolicy":
        return cls(
            max_retries=int(config.get("max_retries", 3)),
            delay_seconds=float(config.get("delay_seconds", 2.0)),
            delay_step_seconds=float(config.get("delay_step_seconds", 2.0)),
            max_delay_seconds=float(config.get("max_delay_seconds", 30.0)),
            auto_retry=bool(config.get("auto_retry", True)),
        )

    # ------------------------------------------------------------------
    def classify(self, error: BaseException | None) -> RetryDecision:
        if isinstance(error, (RetryableProviderError, asyncio.TimeoutError)):
            return RetryDecision.RETRYABLE
        # Terminal provider errors, dependency failures and anything unexpected.
        return RetryDecision.TERMINAL

    def should_retry(self, task: Task) -> bool:
        return (
            self.classify(task.last_error) is RetryDecision.RETRYABLE
            and task.retry_count < self.max_retries
        )

    def delay_for(self, task: Task) -> float:
        """Linear delay before the task's next attempt, from its current retry count."""

        delay = self.delay_seconds + self.delay_step_seconds * max(0, task.retry_count)
        return float(max(0.0, min(self.max_delay_seconds, delay)))


__all__ = ["RetryDecision", "RetryPolicy"]
