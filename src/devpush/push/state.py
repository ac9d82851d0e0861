"""Persisted per-component push state.

This module provides:
- PushState: Last committed index, generation and reconcile hash
- PushStateStore: JSON file storage with atomic replace-on-write

A PushState is written only after a cycle fully succeeds, and always via a
temporary file renamed over the old one, so a crash mid-write leaves the
previous record intact. Exactly one controller may own a state file; two
processes pushing the same component against the same file is unsupported.
"""

from __future__ import annotations

import contextlib
import logging
import os
import tempfile
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from devpush.cluster.resources import ResourceKind, ResourceRef
from devpush.core.config import DEFAULT_STATE_DIR
from devpush.sync.indexer import FileEntry, FileIndex

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


class StoredRef(BaseModel):
    """Serialized ResourceRef."""

    model_config = ConfigDict(frozen=True)

    kind: ResourceKind
    name: str

    @classmethod
    def from_ref(cls, ref: ResourceRef) -> StoredRef:
        """Build from a ResourceRef."""
        return cls(kind=ref.kind, name=ref.name)

    def to_ref(self) -> ResourceRef:
        """Convert back to a ResourceRef."""
        return ResourceRef(self.kind, self.name)


class PushState(BaseModel):
    """Record of the last fully successful push of a component.

    Attributes:
        component: Component name.
        last_index: Index whose delivery was fully acknowledged.
        last_successful_generation: Count of committed cycles.
        last_reconcile_hash: Declaration hash of the last reconcile.
        applied_resources: Resource refs left in place by that reconcile.
    """

    model_config = ConfigDict(frozen=True)

    format_version: int = STATE_FORMAT_VERSION
    component: str
    last_index: dict[str, FileEntry] = Field(default_factory=dict)
    last_successful_generation: int = 0
    last_reconcile_hash: str | None = None
    applied_resources: list[StoredRef] = Field(default_factory=list)

    @classmethod
    def initial(cls, component: str) -> PushState:
        """State used before the first successful push."""
        return cls(component=component)

    @property
    def index(self) -> FileIndex:
        """The last committed index as a FileIndex."""
        return FileIndex(self.last_index)

    @property
    def applied_refs(self) -> list[ResourceRef]:
        """Applied resources as ResourceRefs."""
        return [r.to_ref() for r in self.applied_resources]

    def advance(
        self,
        index: FileIndex,
        reconcile_hash: str | None,
        applied: list[ResourceRef],
    ) -> PushState:
        """Return the state that follows a successful cycle."""
        return PushState(
            component=self.component,
            last_index=index.to_dict(),
            last_successful_generation=self.last_successful_generation + 1,
            last_reconcile_hash=reconcile_hash,
            applied_resources=[StoredRef.from_ref(r) for r in applied],
        )


def default_state_path(root: Path, component: str, state_dir: str = DEFAULT_STATE_DIR) -> Path:
    """Default location of a component's state file under the sync root."""
    return Path(root) / state_dir / f"{component}.json"


class PushStateStore:
    """Loads and atomically saves a PushState as JSON."""

    def __init__(self, path: Path) -> None:
        """Initialize the store.

        Args:
            path: Path to the JSON state file.
        """
        self._path = Path(path)

    @property
    def path(self) -> Path:
        """Get the state file path."""
        return self._path

    def exists(self) -> bool:
        """Check if a state has been committed."""
        return self._path.exists()

    def load(self) -> PushState | None:
        """Load the committed state.

        Returns:
            The stored PushState, or None if there is none or it cannot be
            parsed. An unreadable record only costs a full re-push.
        """
        if not self._path.exists():
            return None
        try:
            raw = self._path.read_text(encoding="utf-8")
            return PushState.model_validate_json(raw)
        except (OSError, ValidationError) as e:
            logger.warning(f"Ignoring unreadable push state {self._path}: {e}")
            return None

    def save(self, state: PushState) -> None:
        """Write the state with write-to-temp-then-rename.

        Raises:
            OSError: If the state cannot be written; the old file is untouched.
        """
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = state.model_dump_json(indent=2)

        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp_name)
            raise
        _fsync_directory(self._path.parent)
        logger.debug(
            f"Saved push state generation {state.last_successful_generation} to {self._path}"
        )

    def clear(self) -> None:
        """Delete the stored state, forcing a full push next time."""
        try:
            self._path.unlink()
        except FileNotFoundError:
            return
        logger.info(f"Removed push state {self._path}")


def _fsync_directory(directory: Path) -> None:
    """Flush a directory entry so a completed rename survives a crash."""
    if not hasattr(os, "O_DIRECTORY"):
        return
    fd = os.open(directory, os.O_RDONLY | os.O_DIRECTORY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)
