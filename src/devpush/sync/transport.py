"""Ordered delivery of a SyncPlan to a remote execution target.

Order within one cycle:
    1. deletions, as one batched remove_paths call
    2. modified files, then added files, as one tar archive via stream_in

A failure at any step leaves the cycle uncommitted; the caller re-diffs
against the last committed index next time, and re-sending is safe since
writes are idempotent at the file-content level.
"""

from __future__ import annotations

import logging
import posixpath
import shlex
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from devpush.core.cancel import CancelToken
from devpush.core.config import DEFAULT_REMOTE_ROOT
from devpush.core.errors import CommandFailedError
from devpush.sync.archive import build_archive, validate_relative_path
from devpush.sync.diff import SyncPlan
from devpush.sync.indexer import FileEntry
from devpush.sync.retry import RetryScheduler

logger = logging.getLogger(__name__)


@dataclass
class ExecResult:
    """Output of a command run on the remote target."""

    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        """Check if the command exited successfully."""
        return self.exit_code == 0


class RemoteTarget(Protocol):
    """Capabilities consumed from the remote execution transport.

    Implementations should honour ``cancel`` (deadline and cancellation) and
    raise TransientTransportError for network failures and FatalAuthError
    for rejected credentials.
    """

    def exec(self, command: list[str], *, cancel: CancelToken) -> ExecResult:
        """Run a command in the remote environment."""
        ...

    def stream_in(self, archive: bytes, destination: str, *, cancel: CancelToken) -> None:
        """Extract a tar archive into destination."""
        ...

    def remove_paths(self, paths: list[str], *, cancel: CancelToken) -> None:
        """Remove absolute remote paths; missing paths are not an error."""
        ...


@dataclass
class SyncSummary:
    """Result of delivering one plan.

    Attributes:
        files_written: Files delivered through the archive.
        files_deleted: Paths removed remotely.
        bytes_transferred: Size of the archive streamed.
        delivered: Entries for the bytes actually delivered, by path.
    """

    files_written: int = 0
    files_deleted: int = 0
    bytes_transferred: int = 0
    delivered: dict[str, FileEntry] = field(default_factory=dict)


class SyncTransport:
    """Applies SyncPlans to a RemoteTarget through a RetryScheduler."""

    def __init__(
        self,
        target: RemoteTarget,
        retry: RetryScheduler,
        remote_root: str = DEFAULT_REMOTE_ROOT,
        workers: int = 4,
    ) -> None:
        """Initialize the transport.

        Args:
            target: Remote execution target.
            retry: Scheduler wrapping every remote call.
            remote_root: Remote directory mirroring the local sync root.
            workers: Threads used to read files before archiving.
        """
        self._target = target
        self._retry = retry
        self._remote_root = remote_root
        self._workers = workers

    @property
    def remote_root(self) -> str:
        """Get the remote directory mirroring the sync root."""
        return self._remote_root

    def remote_path(self, rel_path: str) -> str:
        """Map a relative path onto the remote root."""
        return posixpath.join(self._remote_root, validate_relative_path(rel_path))

    def apply(
        self,
        plan: SyncPlan,
        root: Path,
        cancel: CancelToken | None = None,
        index: Mapping[str, FileEntry] | None = None,
    ) -> SyncSummary:
        """Deliver a plan: deletions first, then modified, then added.

        Args:
            plan: Classified delta to apply.
            root: Local sync root to read file contents from.
            cancel: Cancellation token for remote calls.
            index: Index the plan was computed from, used to log drift
                between indexing and reading.

        Returns:
            SyncSummary for the cycle.

        Raises:
            FileTransferError: A file to deliver could not be read.
            RetryExhaustedError: A remote call kept failing transiently.
            PushCancelledError: The cycle was cancelled.
        """
        cancel = cancel or CancelToken()
        summary = SyncSummary()
        if plan.is_empty:
            logger.debug("Nothing to sync")
            return summary

        if plan.deleted:
            summary.files_deleted = self._delete(sorted(plan.deleted), cancel)

        to_write = plan.to_write
        if to_write:
            cancel.raise_if_cancelled()
            archive = build_archive(root, to_write, workers=self._workers)
            cancel.raise_if_cancelled()
            self._retry.call(
                f"stream {len(archive.members)} files",
                lambda c: self._target.stream_in(archive.data, self._remote_root, cancel=c),
                cancel,
            )
            for member in archive.members:
                entry = member.entry
                if index is not None and member.path in index:
                    if index[member.path].content_hash != entry.content_hash:
                        logger.debug(f"{member.path} changed after indexing")
                summary.delivered[member.path] = entry
            summary.files_written = len(archive.members)
            summary.bytes_transferred = len(archive.data)

        logger.info(
            f"Synced {summary.files_written} files, deleted {summary.files_deleted} "
            f"({summary.bytes_transferred} bytes)"
        )
        return summary

    def _delete(self, paths: list[str], cancel: CancelToken) -> int:
        remote_paths = [self.remote_path(p) for p in paths]
        self._retry.call(
            f"delete {len(remote_paths)} paths",
            lambda c: self._target.remove_paths(remote_paths, cancel=c),
            cancel,
        )
        logger.debug("Deleted remote paths: %s", remote_paths)
        return len(remote_paths)

    def run_command(self, command: str, cancel: CancelToken | None = None) -> ExecResult:
        """Run a shell command inside the remote root.

        Raises:
            CommandFailedError: If the command exits non-zero.
        """
        cancel = cancel or CancelToken()
        argv = ["/bin/sh", "-c", f"cd {shlex.quote(self._remote_root)} && {command}"]
        result: ExecResult = self._retry.call(
            f"exec {command!r}",
            lambda c: self._target.exec(argv, cancel=c),
            cancel,
        )
        if not result.ok:
            raise CommandFailedError(command, result.exit_code, result.stderr)
        logger.info(f"Command {command!r} completed")
        return result
