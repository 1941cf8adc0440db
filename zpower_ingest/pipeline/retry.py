"""Retry with exponential backoff.

The delay policy is a pure function of the attempt number (plus an
optional random source for jitter) so it can be tested without timers.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_EXPONENT = 32


@dataclass(frozen=True)
class RetryConfig:
    """Retry/backoff settings.

    ``max_attempts=None`` retries forever.
    """

    max_attempts: Optional[int] = 3
    base_delay: float = 0.5  # seconds
    max_delay: float = 10.0  # seconds
    exponential_base: float = 2.0
    jitter: float = 0.25  # ± fraction of the delay, 0 disables

    def calculate_delay(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Delay to wait after the given failed attempt (1-indexed).

        Args:
            attempt: Number of the attempt that just failed.
            rng: Random source for the jitter; the module RNG when None.

        Returns:
            Delay in seconds, never above ``max_delay``.
        """
        # Exponent capped: unbounded retry counts would overflow the float.
        exponent = min(max(attempt - 1, 0), MAX_EXPONENT)
        delay = self.base_delay * (self.exponential_base ** exponent)
        delay = min(delay, self.max_delay)

        if self.jitter > 0:
            jitter_range = delay * self.jitter
            uniform = (rng or random).uniform
            delay += uniform(-jitter_range, jitter_range)

        return min(max(0.0, delay), self.max_delay)

    def should_retry(self, attempt: int) -> bool:
        return self.max_attempts is None or attempt < self.max_attempts


class RetryExhausted(Exception):
    """Every attempt failed; ``last_error`` holds the final exception."""

    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")


class RetryExecutor:
    """Runs an operation with retry.

    Args:
        config: Backoff policy.
        retryable: Exceptions that trigger another attempt; anything else
            propagates immediately.
        retry_if: Further filter on a caught exception.
        sleep: Injected for tests.
        rng: Random source for jitter.
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        retryable: Tuple[Type[BaseException], ...] = (Exception,),
        retry_if: Optional[Callable[[BaseException], bool]] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ):
        self._config = config or RetryConfig()
        self._retryable = retryable
        self._retry_if = retry_if
        self._sleep = sleep
        self._rng = rng
        self._total_attempts = 0
        self._total_retries = 0
        self._total_failures = 0

    @property
    def stats(self) -> dict:
        return {
            "total_attempts": self._total_attempts,
            "total_retries": self._total_retries,
            "total_failures": self._total_failures,
        }

    def execute(
        self,
        func: Callable[..., T],
        *args,
        on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
        **kwargs,
    ) -> T:
        """Call ``func`` until it succeeds or the attempts run out.

        Raises:
            RetryExhausted: when every allowed attempt failed.
        """
        attempt = 0
        while True:
            attempt += 1
            self._total_attempts += 1
            try:
                return func(*args, **kwargs)
            except self._retryable as e:
                if self._retry_if is not None and not self._retry_if(e):
                    self._total_failures += 1
                    raise
                if not self._config.should_retry(attempt):
                    self._total_failures += 1
                    logger.error(
                        "RETRY_EXHAUSTED func=%s attempts=%d err=%s",
                        getattr(func, "__name__", func), attempt, e,
                    )
                    raise RetryExhausted(attempt, e) from e

                self._total_retries += 1
                delay = self._config.calculate_delay(attempt, self._rng)
                logger.warning(
                    "RETRY func=%s attempt=%d/%s delay=%.2fs err=%s",
                    getattr(func, "__name__", func),
                    attempt,
                    self._config.max_attempts or "inf",
                    delay,
                    e,
                )
                if on_retry:
                    on_retry(attempt, e, delay)
                self._sleep(delay)
