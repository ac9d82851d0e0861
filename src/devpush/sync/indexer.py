"""Content-addressed index of a local source tree.

This module provides:
- FileEntry: Hash, size and mtime of one file
- FileIndex: Immutable snapshot mapping relative paths to entries
- IndexWarning: A file or directory that could not be read
- IndexResult: An index plus the warnings collected while building it
- FileIndexer: Walks a directory tree and builds a FileIndex
"""

from __future__ import annotations

import logging
import os
import stat
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from pydantic import BaseModel, ConfigDict

from devpush.core.errors import FileIndexError
from devpush.core.hashing import compute_file_hash
from devpush.sync.ignore import IgnorePatterns

logger = logging.getLogger(__name__)


class FileEntry(BaseModel):
    """Indexed state of a single file.

    Attributes:
        content_hash: SHA-256 of the file bytes.
        size: File size in bytes.
        mtime: Modification time (seconds since epoch).
    """

    model_config = ConfigDict(frozen=True)

    content_hash: str
    size: int
    mtime: float


class FileIndex(Mapping[str, FileEntry]):
    """Immutable snapshot of a tree: relative posix path -> FileEntry."""

    __slots__ = ("_entries",)

    def __init__(self, entries: Mapping[str, FileEntry] | None = None) -> None:
        self._entries: dict[str, FileEntry] = dict(entries or {})

    def __getitem__(self, path: str) -> FileEntry:
        return self._entries[path]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, FileIndex):
            return self._entries == other._entries
        if isinstance(other, Mapping):
            return self._entries == dict(other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(frozenset(self._entries.items()))

    def __repr__(self) -> str:
        return f"FileIndex({len(self._entries)} files)"

    @property
    def total_size(self) -> int:
        """Sum of file sizes in bytes."""
        return sum(entry.size for entry in self._entries.values())

    def replace(self, updates: Mapping[str, FileEntry]) -> FileIndex:
        """Return a new index with updates applied on top of this one."""
        merged = dict(self._entries)
        merged.update(updates)
        return FileIndex(merged)

    def to_dict(self) -> dict[str, FileEntry]:
        """Return a plain dict copy (for serialization)."""
        return dict(self._entries)


@dataclass(frozen=True)
class IndexWarning:
    """A path skipped because it could not be read."""

    path: str
    reason: str


@dataclass
class IndexResult:
    """Result of an index build.

    Paths that exist but could not be read keep their entry from the previous
    index and are listed in ``carried``, so a read error never looks like a
    deletion.
    """

    index: FileIndex
    warnings: list[IndexWarning] = field(default_factory=list)
    carried: set[str] = field(default_factory=set)
    hashed: int = 0
    reused: int = 0

    @property
    def has_warnings(self) -> bool:
        """Check if any path was skipped."""
        return len(self.warnings) > 0


class FileIndexer:
    """Walks a sync root and produces a FileIndex.

    Usage:
        indexer = FileIndexer(root, IgnorePatterns.for_root(root))
        result = indexer.build(previous=state.last_index)
        for warning in result.warnings:
            ...
    """

    def __init__(
        self,
        root: Path,
        ignore: IgnorePatterns | None = None,
        follow_symlinks: bool = True,
    ) -> None:
        """Initialize the indexer.

        Args:
            root: Directory to index.
            ignore: Patterns for paths to skip.
            follow_symlinks: Descend into symlinked directories (cycles are
                still detected and skipped).
        """
        self._root = Path(root)
        self._ignore = ignore or IgnorePatterns()
        self._follow_symlinks = follow_symlinks
        self._rehash = False

    @property
    def root(self) -> Path:
        """Get the indexed root directory."""
        return self._root

    def build(
        self,
        previous: Mapping[str, FileEntry] | None = None,
        rehash: bool = False,
    ) -> IndexResult:
        """Build a new index.

        Files whose size and mtime match their entry in ``previous`` keep the
        previous hash; everything else is hashed from its bytes.

        Args:
            previous: Index from the last committed cycle, if any.
            rehash: Hash every file even when size and mtime match.

        Returns:
            IndexResult with the index and any per-path warnings.

        Raises:
            FileIndexError: If the root cannot be read.
        """
        try:
            root_stat = os.stat(self._root)
        except OSError as e:
            raise FileIndexError(f"Cannot read sync root {self._root}: {e}") from e
        if not stat.S_ISDIR(root_stat.st_mode):
            raise FileIndexError(f"Sync root is not a directory: {self._root}")
        if not os.access(self._root, os.R_OK | os.X_OK):
            raise FileIndexError(f"Sync root is not readable: {self._root}")

        result = IndexResult(index=FileIndex())
        entries: dict[str, FileEntry] = {}
        visited = {(root_stat.st_dev, root_stat.st_ino)}

        self._rehash = rehash
        self._walk(self._root, "", entries, result, visited, previous or {})

        result.index = FileIndex(entries)
        logger.debug(
            f"Indexed {len(entries)} files under {self._root} "
            f"({result.hashed} hashed, {result.reused} reused, "
            f"{len(result.warnings)} warnings)"
        )
        return result

    def _walk(
        self,
        directory: Path,
        rel_dir: str,
        entries: dict[str, FileEntry],
        result: IndexResult,
        visited: set[tuple[int, int]],
        previous: Mapping[str, FileEntry],
    ) -> None:
        try:
            with os.scandir(directory) as it:
                children = sorted(it, key=lambda e: e.name)
        except OSError as e:
            if not rel_dir:
                raise FileIndexError(f"Cannot list sync root {directory}: {e}") from e
            result.warnings.append(IndexWarning(rel_dir, f"cannot list directory: {e}"))
            _carry_forward(rel_dir, e, entries, result, previous)
            return

        for child in children:
            rel_path = f"{rel_dir}/{child.name}" if rel_dir else child.name
            try:
                is_link = child.is_symlink()
                is_dir = child.is_dir(follow_symlinks=True)
            except OSError as e:
                result.warnings.append(IndexWarning(rel_path, str(e)))
                _carry_forward(rel_path, e, entries, result, previous)
                continue

            if self._ignore.matches(rel_path, is_dir=is_dir):
                continue

            if is_dir:
                if is_link and not self._follow_symlinks:
                    continue
                try:
                    st = os.stat(child.path)
                except OSError as e:
                    result.warnings.append(IndexWarning(rel_path, str(e)))
                    _carry_forward(rel_path, e, entries, result, previous)
                    continue
                key = (st.st_dev, st.st_ino)
                if key in visited:
                    logger.debug(f"Skipping symlink cycle at {rel_path}")
                    continue
                visited.add(key)
                self._walk(Path(child.path), rel_path, entries, result, visited, previous)
                visited.discard(key)
                continue

            entry = self._index_file(Path(child.path), rel_path, result, previous)
            if entry is not None:
                entries[rel_path] = entry

    def _index_file(
        self,
        path: Path,
        rel_path: str,
        result: IndexResult,
        previous: Mapping[str, FileEntry],
    ) -> FileEntry | None:
        try:
            st = os.stat(path)
        except OSError as e:
            # Dangling symlinks land here too
            result.warnings.append(IndexWarning(rel_path, str(e)))
            return _carried_entry(rel_path, e, result, previous)
        if not stat.S_ISREG(st.st_mode):
            return None

        known = previous.get(rel_path)
        if (
            not self._rehash
            and known is not None
            and known.size == st.st_size
            and known.mtime == st.st_mtime
        ):
            result.reused += 1
            return known

        try:
            content_hash = compute_file_hash(path)
        except OSError as e:
            result.warnings.append(IndexWarning(rel_path, str(e)))
            return _carried_entry(rel_path, e, result, previous)

        result.hashed += 1
        return FileEntry(content_hash=content_hash, size=st.st_size, mtime=st.st_mtime)


def _carried_entry(
    rel_path: str,
    error: OSError,
    result: IndexResult,
    previous: Mapping[str, FileEntry],
) -> FileEntry | None:
    """Previous entry of a file that exists but could not be read."""
    # A vanished file or a dangling link is a real deletion
    if isinstance(error, FileNotFoundError):
        return None
    known = previous.get(rel_path)
    if known is not None:
        result.carried.add(rel_path)
    return known


def _carry_forward(
    rel_path: str,
    error: OSError,
    entries: dict[str, FileEntry],
    result: IndexResult,
    previous: Mapping[str, FileEntry],
) -> None:
    """Keep previous entries for a path and everything below it."""
    if isinstance(error, FileNotFoundError):
        return
    prefix = f"{rel_path}/"
    for path, entry in previous.items():
        if path == rel_path or path.startswith(prefix):
            entries[path] = entry
            result.carried.add(path)
