"""Tests for the push controller state machine and watch loop."""

import threading
import time
from collections.abc import Callable
from pathlib import Path
from unittest.mock import patch

import pytest

from devpush.cluster.component import ComponentSpec
from devpush.cluster.resources import ResourceKind
from devpush.core.cancel import CancelToken
from devpush.core.config import PushConfig
from devpush.core.errors import (
    CommandFailedError,
    FatalAuthError,
    RetryExhaustedError,
    TransientTransportError,
)
from devpush.core.hashing import compute_file_hash
from devpush.push.controller import PushController, PushPhase
from devpush.push.state import PushState, PushStateStore
from devpush.sync.indexer import FileEntry, FileIndex
from devpush.sync.retry import RetryScheduler
from devpush.sync.transport import ExecResult
from tests.fakes import FakeCluster, FakeRemoteTarget


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll until predicate() is true or the timeout passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


@pytest.fixture
def make_controller(
    source_tree: Path,
    target: FakeRemoteTarget,
    cluster: FakeCluster,
    config: PushConfig,
    retry: RetryScheduler,
) -> Callable[..., PushController]:
    """Factory for controllers over the shared fakes."""

    def factory(spec: ComponentSpec, **kwargs: object) -> PushController:
        return PushController(
            source_tree, spec, target, cluster, config=config, retry=retry, **kwargs
        )

    return factory


@pytest.fixture
def controller(
    make_controller: Callable[..., PushController], spec: ComponentSpec
) -> PushController:
    """Controller for the sample component."""
    return make_controller(spec)


class TestRunOnce:
    """Tests for single push cycles."""

    def test_first_push(
        self,
        controller: PushController,
        target: FakeRemoteTarget,
        cluster: FakeCluster,
    ) -> None:
        """Should deliver every file, create resources and commit generation 1."""
        result = controller.run_once()

        assert result.ok
        assert result.files_written == 2
        assert result.resources_created == 3
        assert result.generation == 1
        assert target.files == {"/projects/a.txt": b"alpha", "/projects/b.txt": b"bravo"}
        assert len(cluster.resources) == 3
        assert controller.phase is PushPhase.IDLE
        assert controller.state.last_successful_generation == 1

    def test_example_scenario(
        self,
        controller: PushController,
        target: FakeRemoteTarget,
        cluster: FakeCluster,
        source_tree: Path,
    ) -> None:
        """Should delete a.txt and rewrite b.txt on the second cycle."""
        controller.run_once()
        target.calls.clear()
        cluster.calls.clear()
        (source_tree / "a.txt").unlink()
        (source_tree / "b.txt").write_text("bravo v2")

        result = controller.run_once()

        assert result.files_deleted == 1
        assert result.files_written == 1
        assert target.operations("remove_paths") == [["/projects/a.txt"]]
        assert target.files == {"/projects/b.txt": b"bravo v2"}
        assert cluster.calls == []
        assert controller.state.last_successful_generation == 2
        assert set(controller.state.last_index) == {"b.txt"}

    def test_idempotent_push(
        self,
        controller: PushController,
        target: FakeRemoteTarget,
        cluster: FakeCluster,
    ) -> None:
        """Should make no remote calls and no commit when nothing changed."""
        controller.run_once()
        state_bytes = controller.store.path.read_bytes()
        target.calls.clear()
        cluster.calls.clear()

        result = controller.run_once()

        assert result.ok
        assert not result.changed
        assert target.calls == []
        assert cluster.calls == []
        assert result.generation == 1
        assert controller.store.path.read_bytes() == state_bytes

    def test_touch_without_edit_sends_nothing(
        self, controller: PushController, target: FakeRemoteTarget, source_tree: Path
    ) -> None:
        """Should ignore an mtime change with identical content."""
        controller.run_once()
        target.calls.clear()
        (source_tree / "a.txt").write_text("alpha")

        controller.run_once()

        assert target.write_calls == 0

    def test_failed_sync_keeps_committed_state(
        self,
        controller: PushController,
        target: FakeRemoteTarget,
        source_tree: Path,
    ) -> None:
        """Should leave the state file untouched when delivery fails."""
        controller.run_once()
        state_bytes = controller.store.path.read_bytes()
        (source_tree / "b.txt").write_text("bravo v2")
        target.fail_next["stream_in"] = [TransientTransportError("down") for _ in range(5)]

        result = controller.run_once()

        assert not result.ok
        assert isinstance(result.error, RetryExhaustedError)
        assert result.failed_phase is PushPhase.SYNCING
        assert controller.phase is PushPhase.IDLE
        assert controller.state.last_successful_generation == 1
        assert controller.store.path.read_bytes() == state_bytes

    def test_next_cycle_recovers(
        self,
        controller: PushController,
        target: FakeRemoteTarget,
        source_tree: Path,
    ) -> None:
        """Should re-diff against the last committed index after a failure."""
        controller.run_once()
        (source_tree / "b.txt").write_text("bravo v2")
        target.fail_next["stream_in"] = [TransientTransportError("down") for _ in range(5)]
        controller.run_once()

        result = controller.run_once()

        assert result.ok
        assert result.files_written == 1
        assert target.files["/projects/b.txt"] == b"bravo v2"
        assert controller.state.last_successful_generation == 2

    def test_fatal_reconcile_error(
        self,
        controller: PushController,
        target: FakeRemoteTarget,
        cluster: FakeCluster,
    ) -> None:
        """Should fail in RECONCILING before touching the target."""
        cluster.fail_next["create"] = [FatalAuthError("token expired")]

        result = controller.run_once()

        assert isinstance(result.error, FatalAuthError)
        assert result.failed_phase is PushPhase.RECONCILING
        assert target.calls == []
        assert not controller.store.exists()
        assert controller.phase is PushPhase.IDLE

    def test_transitions(
        self, make_controller: Callable[..., PushController], spec: ComponentSpec
    ) -> None:
        """Should walk the phases in order and report each transition."""
        seen: list[tuple[PushPhase, PushPhase]] = []
        controller = make_controller(spec, on_transition=lambda old, new: seen.append((old, new)))

        controller.run_once()

        assert seen == [
            (PushPhase.IDLE, PushPhase.INDEXING),
            (PushPhase.INDEXING, PushPhase.RECONCILING),
            (PushPhase.RECONCILING, PushPhase.SYNCING),
            (PushPhase.SYNCING, PushPhase.COMMITTING),
            (PushPhase.COMMITTING, PushPhase.IDLE),
        ]

    def test_failure_transitions(
        self,
        make_controller: Callable[..., PushController],
        spec: ComponentSpec,
        target: FakeRemoteTarget,
    ) -> None:
        """Should pass through FAILED back to IDLE."""
        seen: list[PushPhase] = []
        controller = make_controller(spec, on_transition=lambda old, new: seen.append(new))
        target.fail_next["stream_in"] = [TransientTransportError("x") for _ in range(5)]

        controller.run_once()

        assert seen[-3:] == [PushPhase.SYNCING, PushPhase.FAILED, PushPhase.IDLE]

    def test_on_cycle_callback(
        self, make_controller: Callable[..., PushController], spec: ComponentSpec
    ) -> None:
        """Should report every cycle result."""
        results = []
        controller = make_controller(spec, on_cycle=results.append)

        controller.run_once()
        controller.run_once()

        assert [r.generation for r in results] == [1, 1]
        assert controller.cycles_run == 2
        assert controller.last_result is results[-1]

    def test_forced_push_resends_everything(
        self,
        controller: PushController,
        target: FakeRemoteTarget,
        cluster: FakeCluster,
    ) -> None:
        """Should rewrite every file and re-check the cluster when forced."""
        controller.run_once()
        target.calls.clear()
        cluster.calls.clear()

        result = controller.run_once(force=True)

        assert result.files_written == 2
        assert cluster.calls
        assert cluster.mutating_calls == []

    def test_unreadable_file_not_deleted_remotely(
        self,
        controller: PushController,
        target: FakeRemoteTarget,
        source_tree: Path,
    ) -> None:
        """Should keep the remote copy of a file that exists but cannot be read."""
        controller.run_once()
        target.calls.clear()
        (source_tree / "a.txt").write_text("alpha edited")

        with patch(
            "devpush.sync.indexer.compute_file_hash", side_effect=PermissionError("denied")
        ):
            result = controller.run_once()

        assert result.ok
        assert result.index_warnings == 1
        assert target.operations("remove_paths") == []
        assert target.files["/projects/a.txt"] == b"alpha"
        assert "a.txt" in controller.state.last_index

    def test_forced_push_skips_unreadable_file(
        self,
        controller: PushController,
        target: FakeRemoteTarget,
        source_tree: Path,
    ) -> None:
        """Should rewrite only readable files and delete nothing on a forced push."""
        controller.run_once()
        target.calls.clear()
        real_hash = compute_file_hash

        def flaky_hash(path: Path) -> str:
            if path.name == "a.txt":
                raise PermissionError("denied")
            return real_hash(path)

        with patch("devpush.sync.indexer.compute_file_hash", side_effect=flaky_hash):
            result = controller.run_once(force=True)

        assert result.ok
        assert result.files_written == 1
        assert target.operations("remove_paths") == []
        assert target.files["/projects/a.txt"] == b"alpha"

    def test_slow_call_retried_not_aborted(
        self,
        source_tree: Path,
        spec: ComponentSpec,
        cluster: FakeCluster,
        config: PushConfig,
    ) -> None:
        """Should retry a call that outlives its deadline and keep the controller usable."""
        attempts: list[int] = []

        class SlowTarget(FakeRemoteTarget):
            def stream_in(self, archive, destination, *, cancel):  # type: ignore[no-untyped-def]
                attempts.append(1)
                if len(attempts) == 1:
                    cancel.wait(5.0)
                    cancel.raise_if_cancelled()
                super().stream_in(archive, destination, cancel=cancel)

        target = SlowTarget()
        retry = RetryScheduler(jitter=0.0, operation_timeout=0.2, sleep=lambda d, c: False)
        controller = PushController(
            source_tree, spec, target, cluster, config=config, retry=retry
        )

        result = controller.run_once()

        assert result.ok
        assert not result.aborted
        assert len(attempts) == 2
        assert controller.phase is PushPhase.IDLE
        assert target.files["/projects/a.txt"] == b"alpha"
        assert controller.run_once().ok


class TestCommands:
    """Tests for post-sync build and run commands."""

    @pytest.fixture
    def app_spec(self, spec: ComponentSpec) -> ComponentSpec:
        """Component with build and run commands."""
        return spec.model_copy(
            update={"build_command": "npm install", "run_command": "npm start"}
        )

    def test_commands_run_after_sync(
        self,
        make_controller: Callable[..., PushController],
        app_spec: ComponentSpec,
        target: FakeRemoteTarget,
    ) -> None:
        """Should run build then run inside the remote root after delivery."""
        make_controller(app_spec).run_once()

        ops = [op for op, _ in target.calls]
        assert ops == ["stream_in", "exec", "exec"]
        scripts = [argv[-1] for argv in target.operations("exec")]
        assert scripts == ["cd /projects && npm install", "cd /projects && npm start"]

    def test_commands_skipped_without_changes(
        self,
        make_controller: Callable[..., PushController],
        app_spec: ComponentSpec,
        target: FakeRemoteTarget,
    ) -> None:
        """Should not rerun commands when nothing changed."""
        controller = make_controller(app_spec)
        controller.run_once()
        target.calls.clear()

        controller.run_once()

        assert target.operations("exec") == []

    def test_failing_command_fails_cycle(
        self,
        make_controller: Callable[..., PushController],
        app_spec: ComponentSpec,
        target: FakeRemoteTarget,
    ) -> None:
        """Should fail the cycle and skip the commit on a non-zero exit."""
        target.exec_results["npm install"] = ExecResult(stdout="", stderr="ENOENT", exit_code=1)
        controller = make_controller(app_spec)

        result = controller.run_once()

        assert isinstance(result.error, CommandFailedError)
        assert result.failed_phase is PushPhase.SYNCING
        assert controller.state.last_successful_generation == 0
        assert len(target.operations("exec")) == 1


class TestCancellation:
    """Tests for aborting a cycle."""

    def test_cancel_before_start(
        self, controller: PushController, target: FakeRemoteTarget
    ) -> None:
        """Should abort without remote calls."""
        token = CancelToken()
        token.cancel("shutdown")

        result = controller.run_once(cancel=token)

        assert result.aborted
        assert result.failed_phase is PushPhase.INDEXING
        assert controller.phase is PushPhase.ABORTED
        assert target.calls == []

    def test_cancel_during_sync(
        self, controller: PushController, target: FakeRemoteTarget
    ) -> None:
        """Should abort mid-delivery and keep no partial commit."""
        token = CancelToken()

        def on_call(op: str) -> None:
            if op == "stream_in":
                token.cancel("user interrupt")
                raise TransientTransportError("connection closed")

        target.on_call = on_call

        result = controller.run_once(cancel=token)

        assert result.aborted
        assert result.failed_phase is PushPhase.SYNCING
        assert controller.phase is PushPhase.ABORTED
        assert not controller.store.exists()
        assert len(target.operations("stream_in")) == 1

    def test_aborted_is_terminal(self, controller: PushController) -> None:
        """Should refuse further cycles after an abort."""
        token = CancelToken()
        token.cancel()
        controller.run_once(cancel=token)

        with pytest.raises(RuntimeError):
            controller.run_once()
        with pytest.raises(RuntimeError):
            controller.start_watching()


class TestStatePersistence:
    """Tests for state carried across controllers."""

    def test_resumes_from_saved_state(
        self,
        make_controller: Callable[..., PushController],
        spec: ComponentSpec,
        target: FakeRemoteTarget,
    ) -> None:
        """Should not re-send files committed by a previous process."""
        make_controller(spec).run_once()
        target.calls.clear()

        result = make_controller(spec).run_once()

        assert result.generation == 1
        assert target.calls == []

    def test_removed_storage_is_deleted(
        self,
        make_controller: Callable[..., PushController],
        spec: ComponentSpec,
        cluster: FakeCluster,
    ) -> None:
        """Should delete the claim of a mount dropped from the declaration."""
        make_controller(spec).run_once()
        without_storage = spec.model_copy(update={"storage": []})

        result = make_controller(without_storage).run_once()

        assert result.resources_deleted == 1
        assert (ResourceKind.PERSISTENT_VOLUME_CLAIM, "frontend-cache") not in cluster.resources

    def test_other_components_state_ignored(
        self,
        source_tree: Path,
        spec: ComponentSpec,
        target: FakeRemoteTarget,
        cluster: FakeCluster,
        config: PushConfig,
        retry: RetryScheduler,
        tmp_path: Path,
    ) -> None:
        """Should start fresh when the state file belongs to another component."""
        store = PushStateStore(tmp_path / "state.json")
        other = FileIndex({"x": FileEntry(content_hash="h", size=1, mtime=0.0)})
        store.save(PushState.initial("backend").advance(other, "h", []))

        controller = PushController(
            source_tree, spec, target, cluster, config=config, store=store, retry=retry
        )

        assert controller.state.component == "frontend"
        assert controller.state.last_successful_generation == 0

    def test_state_dir_not_synced(
        self, controller: PushController, target: FakeRemoteTarget
    ) -> None:
        """Should never deliver the state directory itself."""
        controller.run_once()
        controller.run_once(force=True)

        assert not any(".devpush" in path for path in target.files)


class TestWatchMode:
    """Tests for the watch loop."""

    def test_initial_push_and_change(
        self,
        controller: PushController,
        target: FakeRemoteTarget,
        source_tree: Path,
    ) -> None:
        """Should push on start and again after a file changes."""
        with controller.start_watching() as handle:
            assert wait_for(lambda: controller.state.last_successful_generation == 1)
            time.sleep(0.2)

            (source_tree / "c.txt").write_text("charlie")

            assert wait_for(lambda: "/projects/c.txt" in target.files)
            assert wait_for(lambda: controller.state.last_successful_generation == 2)

        assert not handle.is_running
        assert controller.phase is PushPhase.ABORTED

    def test_triggers_during_cycle_coalesce(
        self, controller: PushController, target: FakeRemoteTarget
    ) -> None:
        """Should run exactly one follow-up for many requests during a busy cycle."""
        entered = threading.Event()
        release = threading.Event()

        def on_call(op: str) -> None:
            if op == "stream_in" and not entered.is_set():
                entered.set()
                release.wait(5.0)

        target.on_call = on_call

        with controller.start_watching() as handle:
            assert entered.wait(5.0)
            for _ in range(10):
                controller.request_cycle()
            assert controller.pending
            release.set()

            assert wait_for(lambda: controller.cycles_run == 2)
            assert wait_for(lambda: controller.phase is PushPhase.IDLE and not controller.pending)
            time.sleep(0.3)
            assert controller.cycles_run == 2
            assert handle.is_running

    def test_already_watching(self, controller: PushController) -> None:
        """Should refuse a second watch loop."""
        with controller.start_watching(initial_push=False):
            with pytest.raises(RuntimeError):
                controller.start_watching()

    def test_stop_cancels_inflight_cycle(
        self, controller: PushController, target: FakeRemoteTarget
    ) -> None:
        """Should abort a cycle blocked on the target when stopped."""
        entered = threading.Event()
        release = threading.Event()

        def on_call(op: str) -> None:
            if op == "stream_in":
                entered.set()
                release.wait(5.0)
                raise TransientTransportError("closed")

        target.on_call = on_call
        handle = controller.start_watching()
        assert entered.wait(5.0)
        threading.Timer(0.2, release.set).start()

        handle.stop()

        assert not handle.is_running
        assert controller.last_result is not None
        assert controller.last_result.aborted
        assert controller.phase is PushPhase.ABORTED
        assert not controller.store.exists()
