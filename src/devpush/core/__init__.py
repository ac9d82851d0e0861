"""Core module - Shared errors, configuration, cancellation and hashing."""

from devpush.core.cancel import CancelToken
from devpush.core.config import DEFAULT_REMOTE_ROOT, DEFAULT_STATE_DIR, PushConfig
from devpush.core.errors import (
    CommandFailedError,
    ConflictError,
    FatalAuthError,
    FileIndexError,
    FileTransferError,
    InvalidSpecError,
    NotFoundError,
    PushCancelledError,
    PushError,
    RetryExhaustedError,
    TransientTransportError,
)
from devpush.core.hashing import compute_file_hash, hash_bytes

__all__ = [
    # Cancellation
    "CancelToken",
    # Config
    "DEFAULT_REMOTE_ROOT",
    "DEFAULT_STATE_DIR",
    "PushConfig",
    # Errors
    "CommandFailedError",
    "ConflictError",
    "FatalAuthError",
    "FileIndexError",
    "FileTransferError",
    "InvalidSpecError",
    "NotFoundError",
    "PushCancelledError",
    "PushError",
    "RetryExhaustedError",
    "TransientTransportError",
    # Hashing
    "compute_file_hash",
    "hash_bytes",
]
