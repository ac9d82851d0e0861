"""Cancellation tokens with optional deadlines.

A CancelToken is passed to every remote call. Tokens can be chained: a
child created with ``with_timeout()`` is cancelled when its parent is, or
when its own deadline passes.
"""

from __future__ import annotations

import threading
import time

from devpush.core.errors import PushCancelledError


class CancelToken:
    """Cooperative stop signal shared between the controller and its calls."""

    def __init__(
        self,
        parent: CancelToken | None = None,
        timeout: float | None = None,
    ) -> None:
        self._event = threading.Event()
        self._parent = parent
        self._deadline = time.monotonic() + timeout if timeout is not None else None
        self._reason = ""

    @property
    def deadline(self) -> float | None:
        """Monotonic deadline, the earliest along the parent chain."""
        deadlines = []
        token: CancelToken | None = self
        while token is not None:
            if token._deadline is not None:
                deadlines.append(token._deadline)
            token = token._parent
        return min(deadlines) if deadlines else None

    @property
    def cancelled(self) -> bool:
        """Check if this token or any parent was cancelled or timed out."""
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            return True
        return self._parent is not None and self._parent.cancelled

    @property
    def reason(self) -> str:
        """Reason given to cancel(), if any."""
        if self._reason:
            return self._reason
        if self._parent is not None and self._parent.cancelled:
            return self._parent.reason
        if self._deadline is not None and time.monotonic() >= self._deadline:
            return "deadline exceeded"
        return ""

    def cancel(self, reason: str = "cancelled") -> None:
        """Cancel this token and every child derived from it."""
        self._reason = reason
        self._event.set()

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or None without one."""
        deadline = self.deadline
        if deadline is None:
            return None
        return max(0.0, deadline - time.monotonic())

    def with_timeout(self, timeout: float | None) -> CancelToken:
        """Create a child token that also expires after timeout seconds."""
        return CancelToken(parent=self, timeout=timeout)

    def raise_if_cancelled(self) -> None:
        """Raise PushCancelledError if the token is cancelled."""
        if self.cancelled:
            raise PushCancelledError(self.reason or "cancelled")

    def wait(self, seconds: float) -> bool:
        """Sleep up to seconds, waking early on cancellation.

        Returns:
            True if the token was cancelled during the wait.
        """
        end = time.monotonic() + seconds
        while True:
            if self.cancelled:
                return True
            left = end - time.monotonic()
            if left <= 0:
                return False
            remaining = self.remaining()
            if remaining is not None:
                left = min(left, remaining)
            # Poll so parent cancellation is noticed too.
            self._event.wait(min(left, 0.05))
