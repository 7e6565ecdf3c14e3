"""Bounded exponential backoff for store writes."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, TypeVar

from loguru import logger

from ..constants import DEFAULT_RETRY_ATTEMPTS, DEFAULT_RETRY_INITIAL_DELAY, DEFAULT_RETRY_MAX_DELAY
from .errors import FatalStoreError, TransientStoreError

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Retry :class:`TransientStoreError` up to ``attempts`` times.

    The delay starts at ``initial_delay`` and doubles after each failure,
    capped at ``max_delay``.  Any other exception propagates immediately.
    """

    attempts: int = DEFAULT_RETRY_ATTEMPTS
    initial_delay: float = DEFAULT_RETRY_INITIAL_DELAY
    max_delay: float = DEFAULT_RETRY_MAX_DELAY
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    def delay_for(self, attempt: int) -> float:
        """Delay after the 1-based *attempt* failed."""
        return min(self.initial_delay * (2 ** (attempt - 1)), self.max_delay)

    def call(self, operation: Callable[[], T], description: str = "store call") -> T:
        """Run *operation*, retrying transient failures.

        Raises:
            FatalStoreError: retries are exhausted.
        """
        attempts = max(1, int(self.attempts))
        for attempt in range(1, attempts + 1):
            try:
                return operation()
            except TransientStoreError as exc:
                if attempt >= attempts:
                    logger.error("{} failed after {} attempts: {}", description, attempts, exc)
                    raise FatalStoreError(
                        f"{description} failed after {attempts} attempts: {exc}",
                        exc.task_id,
                    ) from exc
                delay = self.delay_for(attempt)
                logger.warning(
                    "{} attempt {}/{} failed ({}); retrying in {:.1f}s",
                    description,
                    attempt,
                    attempts,
                    exc,
                    delay,
                )
                self.sleep(delay)
        raise AssertionError("unreachable")
