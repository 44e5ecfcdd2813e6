"""
Utilities
=========

This module provides the retry policy shared by every external call the
scanner makes: the object store listing, the semantic classifier, the
metadata service and the notification channel.

A `RetryPolicy` is a small value object (attempt budget, backoff curve and a
retryable-error predicate). It can be applied directly with
`policy.call(func, ...)`, or to methods with the `retry()` decorator, which
reads the policy from ``self.retry_policy``.
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from functools import wraps
from typing import Callable, Type, TypeVar

import structlog

log = structlog.get_logger(__name__)
T = TypeVar("T")


def retry_on(*exception_types: Type[BaseException]) -> Callable[[BaseException], bool]:
    """Build a retryable-error predicate from a set of exception types."""

    def predicate(exc: BaseException) -> bool:
        return isinstance(exc, exception_types)

    return predicate


def _never(_exc: BaseException) -> bool:
    return False


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff with jitter.

    Attributes:
        max_attempts: Total number of attempts, including the first one.
        base_delay: Delay before the second attempt, doubled per attempt.
        max_delay: Upper bound on a single backoff delay.
        jitter: Upper bound of the uniform random delay added to each backoff.
        is_retryable: Predicate deciding whether an exception is worth retrying.
        sleep: Injectable sleep function (primarily for tests).
    """

    max_attempts: int = 6
    base_delay: float = 2.0
    max_delay: float = 60.0
    jitter: float = 0.3
    is_retryable: Callable[[BaseException], bool] = field(default=_never)
    sleep: Callable[[float], None] = field(default=time.sleep)

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def from_settings(
        cls,
        settings,
        is_retryable: Callable[[BaseException], bool],
        sleep: Callable[[float], None] = time.sleep,
    ) -> "RetryPolicy":
        return cls(
            max_attempts=settings.MAX_RETRIES,
            base_delay=settings.RETRY_BASE_DELAY,
            max_delay=settings.MAX_RETRY_BACKOFF_SECONDS,
            is_retryable=is_retryable,
            sleep=sleep,
        )

    def with_predicate(self, is_retryable: Callable[[BaseException], bool]) -> "RetryPolicy":
        """Return a copy of this policy that retries a different error family."""
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            jitter=self.jitter,
            is_retryable=is_retryable,
            sleep=self.sleep,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after the given (1-based) failed attempt."""
        delay = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        if self.jitter > 0:
            delay += random.uniform(0, self.jitter)
        return delay

    def call(self, func: Callable[..., T], *args, **kwargs) -> T:
        """Invoke ``func`` and retry it according to this policy."""
        name = getattr(func, "__name__", repr(func))
        for attempt in range(1, self.max_attempts + 1):
            try:
                return func(*args, **kwargs)
            except Exception as e:
                if not self.is_retryable(e):
                    raise
                if attempt == self.max_attempts:
                    log.error(
                        "Call failed after all attempts",
                        func=name,
                        attempts=attempt,
                        error=str(e),
                    )
                    raise
                delay = self.delay_for(attempt)
                log.warning(
                    "Call failed; retrying",
                    func=name,
                    error=str(e),
                    error_type=type(e).__name__,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    delay=round(delay, 2),
                )
                self.sleep(delay)
        # This part should be unreachable if max_attempts > 0
        raise RuntimeError("Retry loop exited unexpectedly.")


def retry() -> Callable[[Callable[..., T]], Callable[..., T]]:
    """
    A decorator that retries a method using ``self.retry_policy``.
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(self, *args, **kwargs) -> T:
            policy: RetryPolicy = self.retry_policy
            return policy.call(func, self, *args, **kwargs)

        return wrapper

    return decorator
