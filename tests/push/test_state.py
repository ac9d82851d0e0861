"""Tests for persisted push state."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from devpush.cluster.resources import ResourceKind, ResourceRef
from devpush.push.state import PushState, PushStateStore, default_state_path
from devpush.sync.indexer import FileEntry, FileIndex


def sample_index() -> FileIndex:
    """An index with two files."""
    return FileIndex(
        {
            "a.txt": FileEntry(content_hash="h1", size=5, mtime=1.0),
            "b.txt": FileEntry(content_hash="h2", size=5, mtime=2.0),
        }
    )


class TestPushState:
    """Tests for PushState."""

    def test_initial(self) -> None:
        """Should start at generation zero with an empty index."""
        state = PushState.initial("web")

        assert state.last_successful_generation == 0
        assert state.index == FileIndex()
        assert state.last_reconcile_hash is None
        assert state.applied_refs == []

    def test_advance(self) -> None:
        """Should bump the generation and record the cycle's outcome."""
        refs = [ResourceRef(ResourceKind.DEPLOYMENT, "web")]

        state = PushState.initial("web").advance(sample_index(), "abc", refs)

        assert state.last_successful_generation == 1
        assert state.index == sample_index()
        assert state.last_reconcile_hash == "abc"
        assert state.applied_refs == refs
        assert state.advance(sample_index(), "abc", refs).last_successful_generation == 2


class TestPushStateStore:
    """Tests for PushStateStore."""

    @pytest.fixture
    def store(self, tmp_path: Path) -> PushStateStore:
        """Store under a not yet existing directory."""
        return PushStateStore(default_state_path(tmp_path, "web"))

    def test_default_path(self, tmp_path: Path) -> None:
        """Should place state under .devpush in the sync root."""
        assert default_state_path(tmp_path, "web") == tmp_path / ".devpush" / "web.json"

    def test_load_missing(self, store: PushStateStore) -> None:
        """Should return None before the first save."""
        assert not store.exists()
        assert store.load() is None

    def test_save_and_load(self, store: PushStateStore) -> None:
        """Should persist every field."""
        refs = [ResourceRef(ResourceKind.SERVICE, "web")]
        state = PushState.initial("web").advance(sample_index(), "abc", refs)

        store.save(state)

        assert store.load() == state

    def test_no_temp_files_left(self, store: PushStateStore) -> None:
        """Should leave only the state file after saving."""
        store.save(PushState.initial("web"))

        assert os.listdir(store.path.parent) == ["web.json"]

    def test_corrupt_file_loads_as_none(self, store: PushStateStore) -> None:
        """Should fall back to no state when the file is unreadable."""
        store.path.parent.mkdir(parents=True)
        store.path.write_text("{not json")

        assert store.load() is None

    def test_failed_write_keeps_old_state(self, store: PushStateStore) -> None:
        """Should leave the previous record intact if the rename fails."""
        old = PushState.initial("web").advance(sample_index(), "abc", [])
        store.save(old)
        before = store.path.read_bytes()

        with patch("devpush.push.state.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                store.save(old.advance(FileIndex(), "def", []))

        assert store.path.read_bytes() == before
        assert os.listdir(store.path.parent) == ["web.json"]

    def test_clear(self, store: PushStateStore) -> None:
        """Should delete the record and tolerate a missing file."""
        store.save(PushState.initial("web"))

        store.clear()
        store.clear()

        assert not store.exists()

    def test_directory_synced_after_rename(self, store: PushStateStore) -> None:
        """Should fsync the state directory after replacing the file."""
        with patch("devpush.push.state.os.fsync", wraps=os.fsync) as fsync:
            store.save(PushState.initial("web"))

        # once for the temp file, once for the directory entry
        assert fsync.call_count == 2
