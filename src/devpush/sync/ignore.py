"""Ignore patterns for indexing and watching.

This module provides:
- IgnorePatterns: Handles gitignore-style pattern matching
- DEFAULT_IGNORE_PATTERNS: Common patterns to ignore
- IGNORE_FILE_NAMES: Files in the sync root that hold extra patterns
"""

from __future__ import annotations

import fnmatch
import logging
from pathlib import Path

from devpush.core.config import DEFAULT_STATE_DIR

logger = logging.getLogger(__name__)

# Default ignore patterns (similar to common .gitignore entries)
DEFAULT_IGNORE_PATTERNS = [
    ".git/",
    ".hg/",
    ".svn/",
    ".DS_Store",
    "*.swp",
    "*.swo",
    "*~",
    "__pycache__/",
    f"{DEFAULT_STATE_DIR}/",
]

# Checked in order; the first one found wins.
IGNORE_FILE_NAMES = (".devpushignore", ".gitignore")


class IgnorePatterns:
    """Handles ignore pattern matching for relative paths.

    Patterns follow the common subset of gitignore syntax:
    - ``name`` matches a basename anywhere in the tree
    - ``dir/`` matches a directory and everything below it
    - ``a/*.txt`` or ``**/x`` match against the full relative path
    - ``!pattern`` re-includes a path excluded by an earlier pattern
    """

    def __init__(self, patterns: list[str] | None = None, defaults: bool = True) -> None:
        """Initialize with patterns.

        Args:
            patterns: List of gitignore-style patterns.
            defaults: Whether to start from DEFAULT_IGNORE_PATTERNS.
        """
        self._patterns: list[str] = list(DEFAULT_IGNORE_PATTERNS) if defaults else []
        if patterns:
            for pattern in patterns:
                self.add_pattern(pattern)

    @classmethod
    def for_root(
        cls,
        root: Path,
        extra: list[str] | None = None,
    ) -> IgnorePatterns:
        """Build patterns for a sync root, loading its ignore file."""
        ignore = cls(extra)
        for name in IGNORE_FILE_NAMES:
            candidate = Path(root) / name
            if candidate.is_file():
                ignore.load_from_file(candidate)
                break
        return ignore

    @property
    def patterns(self) -> list[str]:
        """Get a copy of the active patterns."""
        return list(self._patterns)

    def add_pattern(self, pattern: str) -> None:
        """Add an ignore pattern."""
        pattern = pattern.strip()
        if pattern and not pattern.startswith("#"):
            self._patterns.append(pattern)

    def load_from_file(self, path: Path) -> None:
        """Load patterns from an ignore file."""
        if not path.exists():
            return
        with open(path, encoding="utf-8") as f:
            for line in f:
                self.add_pattern(line)
        logger.debug("Loaded ignore patterns from %s", path)

    def matches(self, rel_path: str, is_dir: bool = False) -> bool:
        """Check if a relative path should be ignored.

        Args:
            rel_path: Path relative to the sync root, using forward slashes.
            is_dir: Whether the path is a directory.

        Returns:
            True if the path should be ignored.
        """
        rel_path = rel_path.strip("/")
        if not rel_path or rel_path == ".":
            return False

        ignored = False
        for raw in self._patterns:
            negate = raw.startswith("!")
            pattern = raw[1:] if negate else raw
            if self._match_one(pattern, rel_path, is_dir):
                ignored = not negate
        return ignored

    def should_ignore(self, path: Path, base_path: Path) -> bool:
        """Check if an absolute path below base_path should be ignored.

        Paths outside base_path are never ignored.
        """
        try:
            rel_path = path.relative_to(base_path)
        except ValueError:
            return False
        return self.matches(rel_path.as_posix(), is_dir=path.is_dir())

    def _match_one(self, pattern: str, rel_path: str, is_dir: bool) -> bool:
        parts = rel_path.split("/")
        dir_only = pattern.endswith("/")
        pattern = pattern.rstrip("/")
        anchored = "/" in pattern
        pattern = pattern.lstrip("/")
        if not pattern:
            return False

        if anchored:
            # Match the path or any of its ancestors, one segment at a time
            segments = pattern.split("/")
            for i in range(len(parts), 0, -1):
                if _match_segments(segments, parts[:i]):
                    if i < len(parts) or not dir_only or is_dir:
                        return True
            return False

        # Basename pattern: any component may match; the last one only
        # counts for directory patterns when it is itself a directory.
        for i, part in enumerate(parts):
            if fnmatch.fnmatch(part, pattern):
                is_last = i == len(parts) - 1
                if not dir_only or not is_last or is_dir:
                    return True
        return False


def _match_segments(pattern: list[str], parts: list[str]) -> bool:
    """Match path segments against pattern segments.

    ``*`` and ``?`` never cross a ``/``; a ``**`` segment matches zero or more
    whole segments.
    """
    if not pattern:
        return not parts
    head = pattern[0]
    if head == "**":
        return any(_match_segments(pattern[1:], parts[i:]) for i in range(len(parts) + 1))
    if not parts or not fnmatch.fnmatch(parts[0], head):
        return False
    return _match_segments(pattern[1:], parts[1:])
