"""Retry policy for flaky network git operations."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded attempts with exponentially increasing, capped backoff."""

    max_attempts: int = 3
    base_delay_seconds: float = 2.0
    backoff_multiplier: float = 2.0
    max_delay_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts <= 0:
            raise ValueError("max_attempts must be > 0.")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0.")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1.")

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed attempt number `attempt` (1-based)."""

        return min(
            self.max_delay_seconds,
            self.base_delay_seconds * (self.backoff_multiplier ** max(attempt - 1, 0)),
        )

    def run(
        self,
        operation: Callable[[], T],
        *,
        is_retryable: Callable[[Exception], bool],
        description: str = "operation",
        sleep: Callable[[float], None] = time.sleep,
    ) -> T:
        """Call `operation` until it succeeds, a non-retryable error occurs or attempts run out."""

        attempt = 1
        while True:
            try:
                return operation()
            except Exception as error:
                if attempt >= self.max_attempts or not is_retryable(error):
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                    description,
                    attempt,
                    self.max_attempts,
                    delay,
                    error,
                )
                sleep(delay)
                attempt += 1
