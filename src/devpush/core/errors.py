"""Error taxonomy for push cycles.

This module provides:
- PushError: Base class for every error raised by devpush
- Local errors: FileIndexError, FileTransferError
- Remote errors: ConflictError, NotFoundError, TransientTransportError,
  FatalAuthError, CommandFailedError
- Declaration errors: InvalidSpecError
- Control errors: RetryExhaustedError, PushCancelledError
"""

from __future__ import annotations


class PushError(Exception):
    """Base exception for push errors."""


class FileIndexError(PushError):
    """The sync root could not be read."""


class FileTransferError(PushError):
    """A local file could not be read for delivery."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Cannot transfer {path}: {reason}")


class InvalidSpecError(PushError):
    """The component declaration is malformed."""


class FatalAuthError(PushError):
    """The remote rejected our credentials."""


class TransientTransportError(PushError):
    """Network failure or timeout talking to a remote endpoint."""


class NotFoundError(PushError):
    """A cluster resource does not exist."""

    def __init__(self, kind: str, name: str) -> None:
        self.kind = kind
        self.name = name
        super().__init__(f"{kind}/{name} not found")


class ConflictError(PushError):
    """A resource version token was stale.

    Attributes:
        kind: Resource kind
        name: Resource name
        expected_version: Version we sent
    """

    def __init__(self, kind: str, name: str, expected_version: str | None = None) -> None:
        self.kind = kind
        self.name = name
        self.expected_version = expected_version
        super().__init__(
            f"Conflict on {kind}/{name}: version {expected_version} is stale"
        )


class CommandFailedError(PushError):
    """A command executed on the remote target exited non-zero."""

    def __init__(self, command: str, exit_code: int, stderr: str = "") -> None:
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        message = f"Command {command!r} exited with code {exit_code}"
        if stderr:
            message += f": {stderr.strip()}"
        super().__init__(message)


class RetryExhaustedError(PushError):
    """A transient error persisted through every retry attempt."""

    def __init__(self, operation: str, attempts: int, last_error: BaseException) -> None:
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation} failed after {attempts} attempts: {last_error}"
        )


class PushCancelledError(PushError):
    """The push was cancelled or its deadline passed."""
