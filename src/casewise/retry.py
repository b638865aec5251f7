# Copyright (c) Syntropy Systems
"""Retry-with-backoff policy applied uniformly to classifier calls."""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, Optional, TypeVar

from pydantic import ValidationError

from casewise.errors import TransientClassifierError

if TYPE_CHECKING:
    from collections.abc import Callable

    from casewise.models.config import RetrySettings

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    TransientClassifierError,
    TimeoutError,
    ConnectionError,
    ValidationError,
)


@dataclass
class RetryResult(Generic[T]):
    """Value of the last attempt, or the error that exhausted the policy."""

    value: Optional[T]
    attempts: int
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class RetryPolicy:
    """Bounded exponential backoff with jitter."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.1
    retry_on: tuple[type[BaseException], ...] = TRANSIENT_ERRORS
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    rng: random.Random = field(default_factory=random.Random, repr=False)

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> RetryPolicy:
        return cls(
            max_attempts=settings.max_attempts,
            base_delay=settings.base_delay,
            max_delay=settings.max_delay,
            jitter=settings.jitter,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed attempt number `attempt` (1-based)."""
        delay = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        if self.jitter:
            delay *= 1 + self.rng.uniform(-self.jitter, self.jitter)
        return max(0.0, delay)

    def call(self, fn: Callable[..., T], *args: object, **kwargs: object) -> RetryResult[T]:
        """
        Call `fn` until it succeeds or the attempts run out.

        Only errors in `retry_on` are retried; anything else propagates
        immediately. Exhaustion is reported in the result, not raised.
        """
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return RetryResult(value=fn(*args, **kwargs), attempts=attempt)
            except self.retry_on as e:
                last_error = e
                if attempt == self.max_attempts:
                    break
                delay = self.delay_for(attempt)
                logger.info(
                    "Attempt %d/%d failed (%s); retrying in %.2fs",
                    attempt,
                    self.max_attempts,
                    e,
                    delay,
                )
                self.sleep(delay)

        return RetryResult(value=None, attempts=self.max_attempts, error=last_error)
