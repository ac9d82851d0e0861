"""Tar archive building for file delivery.

Files are read on a small thread pool, then written into a single
in-memory tar in a fixed order so one ``stream_in`` call delivers the
whole batch.
"""

from __future__ import annotations

import io
import logging
import os
import posixpath
import tarfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path

from devpush.core.errors import FileTransferError
from devpush.core.hashing import hash_bytes
from devpush.sync.indexer import FileEntry

logger = logging.getLogger(__name__)


@dataclass
class ArchiveMember:
    """A file read from disk, ready to be archived."""

    path: str
    data: bytes
    mode: int
    mtime: float

    @property
    def entry(self) -> FileEntry:
        """Index entry describing the bytes actually read."""
        return FileEntry(content_hash=hash_bytes(self.data), size=len(self.data), mtime=self.mtime)


@dataclass
class Archive:
    """A built archive and the entries of the files it contains."""

    data: bytes
    members: list[ArchiveMember]

    @property
    def content_bytes(self) -> int:
        """Total size of the archived file contents."""
        return sum(len(m.data) for m in self.members)


def validate_relative_path(path: str) -> str:
    """Reject paths that would escape the remote root.

    Raises:
        ValueError: For absolute paths or paths containing ``..``.
    """
    if not path or path.startswith("/"):
        raise ValueError(f"Invalid relative path: {path!r}")
    # A backslash is an ordinary file name character on POSIX
    if os.sep != "/" and "\\" in path:
        raise ValueError(f"Invalid relative path: {path!r}")
    normalized = posixpath.normpath(path)
    if normalized == "." or normalized.startswith("../") or normalized == "..":
        raise ValueError(f"Path escapes sync root: {path!r}")
    if any(part == ".." for part in path.split("/")):
        raise ValueError(f"Path escapes sync root: {path!r}")
    return normalized


def read_member(root: Path, rel_path: str) -> ArchiveMember:
    """Read one file for archiving.

    Raises:
        FileTransferError: If the file vanished or cannot be read.
    """
    full_path = root / rel_path
    try:
        st = os.stat(full_path)
        data = full_path.read_bytes()
    except OSError as e:
        raise FileTransferError(rel_path, str(e)) from e
    return ArchiveMember(path=rel_path, data=data, mode=st.st_mode & 0o777, mtime=st.st_mtime)


def build_archive(root: Path, paths: list[str], workers: int = 4) -> Archive:
    """Read files concurrently and pack them into a tar, preserving order.

    Args:
        root: Local sync root.
        paths: Relative paths, in the order they should appear.
        workers: Size of the read pool.

    Returns:
        The archive bytes plus the members read.

    Raises:
        FileTransferError: If any file cannot be read; nothing is archived.
    """
    for path in paths:
        validate_relative_path(path)

    if not paths:
        return Archive(data=b"", members=[])

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="archive-read") as pool:
        # map() preserves input order and re-raises the first failure
        members = list(pool.map(lambda p: read_member(root, p), paths))

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for member in members:
            info = tarfile.TarInfo(name=member.path)
            info.size = len(member.data)
            info.mode = member.mode
            info.mtime = int(member.mtime)
            tar.addfile(info, io.BytesIO(member.data))

    data = buffer.getvalue()
    logger.debug(f"Built archive with {len(members)} files ({len(data)} bytes)")
    return Archive(data=data, members=members)
