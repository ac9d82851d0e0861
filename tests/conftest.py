"""Shared fixtures: in-memory remote target and cluster API."""

from __future__ import annotations

from pathlib import Path

import pytest

from devpush.cluster.component import ComponentSpec
from devpush.core.config import PushConfig
from devpush.sync.retry import RetryScheduler
from tests.fakes import FakeCluster, FakeRemoteTarget


@pytest.fixture
def target() -> FakeRemoteTarget:
    """Create an in-memory remote target."""
    return FakeRemoteTarget()


@pytest.fixture
def cluster() -> FakeCluster:
    """Create an in-memory cluster."""
    return FakeCluster()


@pytest.fixture
def retry() -> RetryScheduler:
    """Retry scheduler that never sleeps."""
    return RetryScheduler(max_attempts=5, jitter=0.0, sleep=lambda delay, cancel: False)


@pytest.fixture
def spec() -> ComponentSpec:
    """A component with a port and a storage mount."""
    return ComponentSpec(
        name="frontend",
        image="registry.example.com/nodejs:18",
        ports=[{"port": 8080}],
        env={"NODE_ENV": "development"},
        storage=[{"name": "cache", "path": "/cache", "size": "2Gi"}],
    )


@pytest.fixture
def config() -> PushConfig:
    """Config with fast retries and a short debounce."""
    return PushConfig(debounce_ms=100, initial_backoff=0.0, jitter=0.0, operation_timeout=None)


@pytest.fixture
def source_tree(tmp_path: Path) -> Path:
    """A small source tree with two files."""
    root = tmp_path / "src"
    root.mkdir()
    (root / "a.txt").write_text("alpha")
    (root / "b.txt").write_text("bravo")
    return root
