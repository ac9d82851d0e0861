"""Delta computation between two index snapshots.

Classification rules:
    | old      | new      | hashes    | class     |
    |----------|----------|-----------|-----------|
    | absent   | present  | -         | added     |
    | present  | absent   | -         | deleted   |
    | present  | present  | differ    | modified  |
    | present  | present  | equal     | unchanged |

Hash equality wins over mtime: a touched but unchanged file is unchanged.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field

from devpush.sync.indexer import FileEntry


@dataclass(frozen=True)
class SyncPlan:
    """Classified delta between two indexes.

    The four sets are disjoint and together cover every path of both
    indexes.
    """

    added: frozenset[str] = field(default_factory=frozenset)
    modified: frozenset[str] = field(default_factory=frozenset)
    deleted: frozenset[str] = field(default_factory=frozenset)
    unchanged: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_empty(self) -> bool:
        """Check if the plan contains no operation."""
        return not (self.added or self.modified or self.deleted)

    @property
    def changed_count(self) -> int:
        """Number of paths that need a remote operation."""
        return len(self.added) + len(self.modified) + len(self.deleted)

    @property
    def to_write(self) -> list[str]:
        """Paths to deliver, modified first then added, each sorted."""
        return sorted(self.modified) + sorted(self.added)

    def classify(self, path: str) -> str | None:
        """Return the class name of path, or None if it is in neither index."""
        for name in ("added", "modified", "deleted", "unchanged"):
            if path in getattr(self, name):
                return name
        return None

    def __repr__(self) -> str:
        return (
            f"SyncPlan(added={len(self.added)}, modified={len(self.modified)}, "
            f"deleted={len(self.deleted)}, unchanged={len(self.unchanged)})"
        )


def diff(old: Mapping[str, FileEntry], new: Mapping[str, FileEntry]) -> SyncPlan:
    """Compare two indexes and classify every path.

    Args:
        old: Index from the last committed cycle (empty on the first one).
        new: Freshly built index.

    Returns:
        SyncPlan with added, modified, deleted and unchanged paths.
    """
    old_paths = set(old)
    new_paths = set(new)

    common = old_paths & new_paths
    modified = {p for p in common if old[p].content_hash != new[p].content_hash}

    return SyncPlan(
        added=frozenset(new_paths - old_paths),
        modified=frozenset(modified),
        deleted=frozenset(old_paths - new_paths),
        unchanged=frozenset(common - modified),
    )
