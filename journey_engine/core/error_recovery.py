"""Backoff policies for node retries and storage writes."""

import random
import time
from dataclasses import dataclass
from datetime import timedelta
from functools import wraps
from typing import Callable, Optional, Tuple, Type, TypeVar

from .exceptions import JourneyEngineError, StorageError, TransientExecutorError
from .logging import ErrorRecoveryLogger, get_logger

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable)


@dataclass(frozen=True)
class RetryConfig:
    """
    Exponential backoff with a cap.

    ``max_attempts`` counts the first try, so ``max_attempts=3`` allows two
    retries. Attempts are 1-based: attempt ``n`` waits
    ``base_delay * exponential_base ** (n - 1)`` seconds, capped at
    ``max_delay``. With ``jitter`` the delay is scaled into ``[50%, 100%]``.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: bool = False
    retryable: Tuple[Type[Exception], ...] = (TransientExecutorError, StorageError)

    @classmethod
    def for_node_failures(cls, config) -> "RetryConfig":
        """Policy for transient executor errors; delays are real wake times, never jittered."""
        return cls(
            max_attempts=config.max_retries + 1,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
        )

    def get_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.exponential_base ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay *= 0.5 + random.random() * 0.5
        return delay

    def backoff(self, attempt: int) -> timedelta:
        return timedelta(seconds=self.get_delay(attempt))

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """True when ``error`` is retryable and attempts remain after ``attempt``."""
        if attempt >= self.max_attempts:
            return False
        if isinstance(error, JourneyEngineError):
            return error.recoverable
        return isinstance(error, self.retryable)


# SQLite write contention clears within milliseconds.
STORAGE_RETRY = RetryConfig(max_attempts=3, base_delay=0.05, max_delay=1.0, jitter=True)


def with_retry(config: Optional[RetryConfig] = None) -> Callable[[F], F]:
    """Re-run the decorated call while it raises retryable errors."""
    policy = config or RetryConfig()

    def decorator(func: F) -> F:
        recovery_logger = ErrorRecoveryLogger(func.__qualname__)

        @wraps(func)
        def wrapper(*args, **kwargs):
            attempt = 1
            while True:
                try:
                    return func(*args, **kwargs)
                except Exception as e:
                    if not policy.should_retry(e, attempt):
                        if attempt > 1:
                            recovery_logger.log_retries_exhausted(func.__name__, e, attempt)
                        raise
                    recovery_logger.log_retry(func.__name__, e, attempt, policy.max_attempts)
                    time.sleep(policy.get_delay(attempt))
                    attempt += 1

        return wrapper

    return decorator
