"""Retry logic with exponential backoff and failure classification.

This module provides:
- Classification: Transient vs fatal outcome of a failed attempt
- default_classify: Maps known errors to a Classification
- RetryableOperation: A named unit of work plus its classifier
- RetryScheduler: Runs operations with bounded, jittered backoff

Every call against the remote target or the cluster API goes through a
RetryScheduler; no other layer decides whether an error is retried.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Generic, TypeVar

import httpx

from devpush.core.cancel import CancelToken
from devpush.core.errors import (
    ConflictError,
    FatalAuthError,
    InvalidSpecError,
    PushCancelledError,
    RetryExhaustedError,
    TransientTransportError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default retry configuration
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_INITIAL_BACKOFF = 0.5  # seconds
DEFAULT_MAX_BACKOFF = 30.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_JITTER = 0.2  # +/- 20%

# Status codes worth another attempt
TRANSIENT_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})

# Errors that indicate connectivity issues
TRANSIENT_EXCEPTIONS: tuple[type[BaseException], ...] = (
    TransientTransportError,
    ConflictError,
    ConnectionError,
    TimeoutError,
    httpx.TransportError,
)

FATAL_EXCEPTIONS: tuple[type[BaseException], ...] = (
    FatalAuthError,
    InvalidSpecError,
    PushCancelledError,
)


class Classification(Enum):
    """How a failed attempt should be handled."""

    TRANSIENT = "transient"
    FATAL = "fatal"


def default_classify(error: BaseException) -> Classification:
    """Classify an error as transient or fatal.

    Unknown errors are fatal so that bugs surface instead of being retried.
    """
    if isinstance(error, FATAL_EXCEPTIONS):
        return Classification.FATAL
    if isinstance(error, TRANSIENT_EXCEPTIONS):
        return Classification.TRANSIENT
    if isinstance(error, httpx.HTTPStatusError):
        if error.response.status_code in TRANSIENT_STATUS_CODES:
            return Classification.TRANSIENT
        return Classification.FATAL
    return Classification.FATAL


@dataclass
class RetryableOperation(Generic[T]):
    """A unit of work to run under a RetryScheduler.

    Attributes:
        name: Human-readable label used in logs and errors.
        action: Called with the cancel token for each attempt.
        classify: Decides whether a raised error is worth retrying.
    """

    name: str
    action: Callable[[CancelToken], T]
    classify: Callable[[BaseException], Classification] = field(default=default_classify)


class RetryScheduler:
    """Runs operations with exponential backoff and jitter.

    Usage:
        retry = RetryScheduler(max_attempts=5)
        result = retry.run(
            RetryableOperation("stream archive", lambda c: target.stream_in(data, root, cancel=c)),
            cancel,
        )
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
        max_backoff: float = DEFAULT_MAX_BACKOFF,
        backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER,
        jitter: float = DEFAULT_JITTER,
        sleep: Callable[[float, CancelToken], bool] | None = None,
        rng: random.Random | None = None,
        operation_timeout: float | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            max_attempts: Total attempts before giving up (including the first).
            initial_backoff: Delay before the second attempt.
            max_backoff: Upper bound for any delay.
            backoff_multiplier: Growth factor between delays.
            jitter: Random fraction applied to each delay.
            sleep: Waits for a delay; returns True if cancelled while waiting.
            rng: Random source for jitter.
            operation_timeout: Deadline for each attempt, None to disable.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._max_attempts = max_attempts
        self._initial_backoff = initial_backoff
        self._max_backoff = max_backoff
        self._multiplier = backoff_multiplier
        self._jitter = jitter
        self._sleep = sleep or (lambda delay, cancel: cancel.wait(delay))
        self._rng = rng or random.Random()
        self._operation_timeout = operation_timeout

    @property
    def max_attempts(self) -> int:
        """Get the attempt ceiling."""
        return self._max_attempts

    def backoff_for(self, attempt: int) -> float:
        """Delay to wait after the given failed attempt (1-based)."""
        base = self._initial_backoff * (self._multiplier ** (attempt - 1))
        base = min(base, self._max_backoff)
        if self._jitter:
            base *= 1 + self._rng.uniform(-self._jitter, self._jitter)
        return max(0.0, min(base, self._max_backoff))

    def run(self, operation: RetryableOperation[T], cancel: CancelToken | None = None) -> T:
        """Execute an operation, retrying transient failures.

        Args:
            operation: The operation to run.
            cancel: Token checked before each attempt and during backoff.

        Returns:
            Whatever the operation's action returns.

        Raises:
            RetryExhaustedError: If every attempt failed transiently.
            PushCancelledError: If cancelled before or between attempts.
            Exception: Any error classified as fatal, unchanged.
        """
        cancel = cancel or CancelToken()

        for attempt in range(1, self._max_attempts + 1):
            cancel.raise_if_cancelled()
            attempt_token = cancel.with_timeout(self._operation_timeout)
            try:
                return operation.action(attempt_token)
            except Exception as e:
                if cancel.cancelled:
                    raise PushCancelledError(cancel.reason or "cancelled") from e
                error: Exception = e
                if attempt_token.cancelled:
                    # Only this attempt's deadline passed: a timeout, not a cancel
                    error = TransientTransportError(f"{operation.name}: deadline exceeded")
                    error.__cause__ = e
                elif operation.classify(e) is Classification.FATAL:
                    logger.error(f"{operation.name} failed with fatal error: {e}")
                    raise

                if attempt == self._max_attempts:
                    logger.error(
                        f"{operation.name}: all {self._max_attempts} attempts failed: {error}"
                    )
                    raise RetryExhaustedError(operation.name, attempt, error) from e

                delay = self.backoff_for(attempt)
                logger.warning(
                    f"{operation.name}: attempt {attempt}/{self._max_attempts} failed: {error}. "
                    f"Retrying in {delay:.1f}s..."
                )
                if self._sleep(delay, cancel):
                    raise PushCancelledError(cancel.reason or "cancelled") from e

        # Should not reach here, but satisfy type checker
        raise RuntimeError("Unexpected retry loop exit")

    def call(
        self,
        name: str,
        action: Callable[[CancelToken], Any],
        cancel: CancelToken | None = None,
    ) -> Any:
        """Shorthand for run(RetryableOperation(name, action), cancel)."""
        return self.run(RetryableOperation(name, action), cancel)
