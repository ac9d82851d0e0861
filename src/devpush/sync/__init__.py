"""File synchronization: index, diff, watch, retry and delivery.

Architecture:
    ChangeWatcher → trigger → FileIndexer → diff() → SyncTransport

Components:
- **IgnorePatterns**: gitignore-style filtering shared by indexer and watcher
- **FileIndexer**: Builds a content-addressed FileIndex of the sync root
- **diff**: Classifies paths into a SyncPlan
- **ChangeWatcher**: watchdog observer with a debounced trigger
- **RetryScheduler**: Bounded exponential backoff for remote calls
- **SyncTransport**: Ordered delivery of a SyncPlan to a RemoteTarget
"""

from devpush.sync.archive import Archive, ArchiveMember, build_archive, validate_relative_path
from devpush.sync.diff import SyncPlan, diff
from devpush.sync.ignore import DEFAULT_IGNORE_PATTERNS, IGNORE_FILE_NAMES, IgnorePatterns
from devpush.sync.indexer import FileEntry, FileIndex, FileIndexer, IndexResult, IndexWarning
from devpush.sync.retry import (
    DEFAULT_MAX_ATTEMPTS,
    Classification,
    RetryableOperation,
    RetryScheduler,
    default_classify,
)
from devpush.sync.transport import ExecResult, RemoteTarget, SyncSummary, SyncTransport
from devpush.sync.watcher import ChangeWatcher, DebouncedTrigger

__all__ = [
    # Archive
    "Archive",
    "ArchiveMember",
    "build_archive",
    "validate_relative_path",
    # Diff
    "SyncPlan",
    "diff",
    # Ignore
    "DEFAULT_IGNORE_PATTERNS",
    "IGNORE_FILE_NAMES",
    "IgnorePatterns",
    # Index
    "FileEntry",
    "FileIndex",
    "FileIndexer",
    "IndexResult",
    "IndexWarning",
    # Retry
    "DEFAULT_MAX_ATTEMPTS",
    "Classification",
    "RetryableOperation",
    "RetryScheduler",
    "default_classify",
    # Transport
    "ExecResult",
    "RemoteTarget",
    "SyncSummary",
    "SyncTransport",
    # Watcher
    "ChangeWatcher",
    "DebouncedTrigger",
]
