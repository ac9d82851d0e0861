"""Configuration for push controllers.

This module defines the policy knobs of a push: where files land on the
remote target, how long the watcher debounces, and how remote calls retry.
None of these values are load-bearing for correctness.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from devpush.sync.retry import RetryScheduler

DEFAULT_REMOTE_ROOT = "/projects"
DEFAULT_STATE_DIR = ".devpush"


@dataclass
class PushConfig:
    """Configuration for a single component's push controller.

    Attributes:
        remote_root: Directory on the remote target that mirrors the sync root.
        debounce_ms: Quiet period before the watcher fires a trigger.
        max_attempts: Attempt ceiling for transient remote failures.
        initial_backoff: First retry delay in seconds.
        max_backoff: Upper bound for a single retry delay.
        backoff_multiplier: Growth factor between retries.
        jitter: Random fraction added to or removed from each delay.
        transfer_workers: Threads used to read files for an archive.
        operation_timeout: Deadline for a single remote call, None to disable.
        state_dir: Directory under the sync root holding push state.
        follow_symlinks: Whether symlinked directories are indexed.
        ignore_patterns: Extra ignore patterns on top of the defaults.
    """

    remote_root: str = DEFAULT_REMOTE_ROOT
    debounce_ms: int = 300
    max_attempts: int = 5
    initial_backoff: float = 0.5
    max_backoff: float = 30.0
    backoff_multiplier: float = 2.0
    jitter: float = 0.2
    transfer_workers: int = 4
    operation_timeout: float | None = 60.0
    state_dir: str = DEFAULT_STATE_DIR
    follow_symlinks: bool = True
    ignore_patterns: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Normalize and validate values."""
        if not self.remote_root.startswith("/"):
            raise ValueError(f"remote_root must be absolute: {self.remote_root}")
        if self.remote_root != "/":
            self.remote_root = self.remote_root.rstrip("/")
        if self.debounce_ms < 0:
            raise ValueError("debounce_ms must be >= 0")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.transfer_workers < 1:
            raise ValueError("transfer_workers must be >= 1")
        if not 0.0 <= self.jitter <= 1.0:
            raise ValueError("jitter must be between 0 and 1")

    @property
    def debounce_s(self) -> float:
        """Debounce window in seconds."""
        return self.debounce_ms / 1000.0

    def retry_scheduler(self) -> RetryScheduler:
        """Build a RetryScheduler from the retry settings."""
        from devpush.sync.retry import RetryScheduler

        return RetryScheduler(
            max_attempts=self.max_attempts,
            initial_backoff=self.initial_backoff,
            max_backoff=self.max_backoff,
            backoff_multiplier=self.backoff_multiplier,
            jitter=self.jitter,
            operation_timeout=self.operation_timeout,
        )
