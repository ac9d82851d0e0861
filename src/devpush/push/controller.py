"""Push controller: the control loop driving one component.

State machine:
    IDLE → INDEXING → RECONCILING → SYNCING → COMMITTING → IDLE
    any  → FAILED → IDLE      recoverable failure, prior PushState kept
    any  → ABORTED            cancellation, terminal

The controller owns its PushState exclusively. It never retries at its own
layer: a failed cycle returns to IDLE and the next trigger re-diffs against
the last committed index.

Usage:
    controller = PushController(root, spec, target, cluster)
    result = controller.run_once()

    with controller.start_watching() as handle:
        handle.wait()
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path

from devpush.cluster.component import ComponentSpec
from devpush.cluster.reconcile import ReconcileManager, ReconcileResult
from devpush.cluster.resources import ClusterAPI
from devpush.core.cancel import CancelToken
from devpush.core.config import PushConfig
from devpush.core.errors import PushCancelledError, PushError
from devpush.push.state import PushState, PushStateStore, default_state_path
from devpush.sync.diff import SyncPlan, diff
from devpush.sync.ignore import IgnorePatterns
from devpush.sync.indexer import FileIndex, FileIndexer
from devpush.sync.retry import RetryScheduler
from devpush.sync.transport import RemoteTarget, SyncSummary, SyncTransport
from devpush.sync.watcher import ChangeWatcher

logger = logging.getLogger(__name__)


class PushPhase(Enum):
    """Phase of the push state machine."""

    IDLE = auto()
    INDEXING = auto()
    RECONCILING = auto()
    SYNCING = auto()
    COMMITTING = auto()
    FAILED = auto()
    ABORTED = auto()


_TRANSITIONS: dict[PushPhase, set[PushPhase]] = {
    PushPhase.IDLE: {PushPhase.INDEXING, PushPhase.ABORTED},
    PushPhase.INDEXING: {PushPhase.RECONCILING, PushPhase.FAILED, PushPhase.ABORTED},
    PushPhase.RECONCILING: {PushPhase.SYNCING, PushPhase.FAILED, PushPhase.ABORTED},
    PushPhase.SYNCING: {PushPhase.COMMITTING, PushPhase.FAILED, PushPhase.ABORTED},
    PushPhase.COMMITTING: {PushPhase.IDLE, PushPhase.FAILED, PushPhase.ABORTED},
    PushPhase.FAILED: {PushPhase.IDLE, PushPhase.ABORTED},
    PushPhase.ABORTED: set(),
}


@dataclass
class CycleResult:
    """Outcome of one push cycle.

    Attributes:
        files_written: Files delivered to the target.
        files_deleted: Paths removed from the target.
        bytes_transferred: Size of the delivered archive.
        resources_created: Cluster resources created.
        resources_updated: Cluster resources updated.
        resources_deleted: Cluster resources deleted.
        generation: Committed generation after the cycle.
        failed_phase: Phase in which the cycle failed or was aborted.
        error: The error that ended the cycle, if any.
        aborted: True if the cycle was cancelled.
        index_warnings: Paths skipped while indexing.
    """

    files_written: int = 0
    files_deleted: int = 0
    bytes_transferred: int = 0
    resources_created: int = 0
    resources_updated: int = 0
    resources_deleted: int = 0
    generation: int = 0
    failed_phase: PushPhase | None = None
    error: BaseException | None = None
    aborted: bool = False
    index_warnings: int = 0

    @property
    def ok(self) -> bool:
        """Check if the cycle committed."""
        return self.error is None and not self.aborted

    @property
    def changed(self) -> bool:
        """Check if the cycle touched the target or the cluster."""
        return bool(
            self.files_written
            or self.files_deleted
            or self.resources_created
            or self.resources_updated
            or self.resources_deleted
        )


class PushController:
    """Drives index → diff → reconcile → sync → commit for one component.

    Only one controller may exist per component and state file; nothing here
    guards against a second process writing the same state.
    """

    def __init__(
        self,
        root: Path,
        spec: ComponentSpec,
        target: RemoteTarget,
        cluster: ClusterAPI,
        config: PushConfig | None = None,
        store: PushStateStore | None = None,
        retry: RetryScheduler | None = None,
        on_cycle: Callable[[CycleResult], None] | None = None,
        on_transition: Callable[[PushPhase, PushPhase], None] | None = None,
    ) -> None:
        """Initialize the controller.

        Args:
            root: Local sync root.
            spec: Component declaration.
            target: Remote execution target.
            cluster: Cluster API client.
            config: Push policy; defaults to PushConfig().
            store: State store; defaults to a file under the sync root.
            retry: Retry scheduler; defaults to one built from config.
            on_cycle: Called with every CycleResult.
            on_transition: Called with (old, new) on every phase change.
        """
        self._root = Path(root).resolve()
        self._spec = spec
        self._config = config or PushConfig()
        self._on_cycle = on_cycle
        self._on_transition = on_transition

        self._ignore = IgnorePatterns.for_root(self._root, self._config.ignore_patterns)
        self._ignore.add_pattern(f"{self._config.state_dir}/")
        self._indexer = FileIndexer(
            self._root, self._ignore, follow_symlinks=self._config.follow_symlinks
        )

        retry = retry or self._config.retry_scheduler()
        self._transport = SyncTransport(
            target,
            retry,
            remote_root=self._config.remote_root,
            workers=self._config.transfer_workers,
        )
        self._reconciler = ReconcileManager(cluster, retry, self._config.remote_root)

        self._store = store or PushStateStore(
            default_state_path(self._root, spec.name, self._config.state_dir)
        )
        self._state = self._load_state()

        self._phase = PushPhase.IDLE
        self._phase_lock = threading.Lock()
        self._cycle_lock = threading.Lock()
        self._cond = threading.Condition()
        self._pending = False
        self._cycles = 0
        self._last_result: CycleResult | None = None
        self._watching = False

    @property
    def root(self) -> Path:
        """Get the sync root."""
        return self._root

    @property
    def spec(self) -> ComponentSpec:
        """Get the component declaration."""
        return self._spec

    @property
    def state(self) -> PushState:
        """Get the last committed PushState."""
        return self._state

    @property
    def store(self) -> PushStateStore:
        """Get the state store."""
        return self._store

    @property
    def phase(self) -> PushPhase:
        """Get the current phase."""
        return self._phase

    @property
    def cycles_run(self) -> int:
        """Number of cycles started."""
        return self._cycles

    @property
    def last_result(self) -> CycleResult | None:
        """Result of the most recent cycle."""
        return self._last_result

    @property
    def pending(self) -> bool:
        """Check if a follow-up cycle is requested."""
        with self._cond:
            return self._pending

    def _load_state(self) -> PushState:
        state = self._store.load()
        if state is None:
            return PushState.initial(self._spec.name)
        if state.component != self._spec.name:
            logger.warning(
                f"Push state at {self._store.path} belongs to {state.component!r}, "
                f"starting fresh for {self._spec.name!r}"
            )
            return PushState.initial(self._spec.name)
        return state

    def _transition(self, new: PushPhase) -> None:
        with self._phase_lock:
            old = self._phase
            if new not in _TRANSITIONS[old]:
                raise RuntimeError(f"Invalid transition {old.name} -> {new.name}")
            self._phase = new
        logger.debug(f"{self._spec.name}: {old.name} -> {new.name}")
        if self._on_transition:
            self._on_transition(old, new)

    # === One-shot ===

    def run_once(self, force: bool = False, cancel: CancelToken | None = None) -> CycleResult:
        """Run a single push cycle.

        Args:
            force: Re-send every file and reconcile even if nothing changed.
            cancel: Token to cancel the cycle; cancellation aborts the
                controller for good.

        Returns:
            CycleResult; failures are reported in it rather than raised.

        Raises:
            RuntimeError: If the controller was aborted earlier.
        """
        with self._cycle_lock:
            return self._run_cycle(force, cancel or CancelToken())

    def _run_cycle(self, force: bool, cancel: CancelToken) -> CycleResult:
        if self._phase is PushPhase.ABORTED:
            raise RuntimeError(f"Push controller for {self._spec.name} was aborted")

        self._cycles += 1
        result = CycleResult(generation=self._state.last_successful_generation)
        state = self._state

        try:
            self._transition(PushPhase.INDEXING)
            cancel.raise_if_cancelled()
            index_result = self._indexer.build(previous=state.last_index, rehash=force)
            for warning in index_result.warnings:
                logger.warning(f"Skipping {warning.path}: {warning.reason}")
            result.index_warnings = len(index_result.warnings)
            new_index = index_result.index
            plan = self._plan(state.index, new_index, force, index_result.carried)
            logger.info(
                f"{self._spec.name}: {len(plan.added)} added, {len(plan.modified)} modified, "
                f"{len(plan.deleted)} deleted"
            )

            self._transition(PushPhase.RECONCILING)
            cancel.raise_if_cancelled()
            reconciled = self._reconciler.reconcile(
                self._spec,
                known_refs=state.applied_refs,
                last_hash=state.last_reconcile_hash,
                cancel=cancel,
                force=force,
            )
            result.resources_created = len(reconciled.created)
            result.resources_updated = len(reconciled.updated)
            result.resources_deleted = len(reconciled.deleted)

            self._transition(PushPhase.SYNCING)
            summary = self._transport.apply(plan, self._root, cancel, index=new_index)
            result.files_written = summary.files_written
            result.files_deleted = summary.files_deleted
            result.bytes_transferred = summary.bytes_transferred
            if not plan.is_empty or reconciled.changed or state.last_successful_generation == 0:
                self._run_commands(cancel)

            self._transition(PushPhase.COMMITTING)
            self._commit(state, new_index, summary, reconciled)
            result.generation = self._state.last_successful_generation
            self._transition(PushPhase.IDLE)

        except Exception as e:
            failed_phase = self._phase
            result.failed_phase = failed_phase
            result.error = e
            if isinstance(e, PushCancelledError) or cancel.cancelled:
                result.aborted = True
                logger.info(f"{self._spec.name}: push aborted during {failed_phase.name}")
                self._transition(PushPhase.ABORTED)
            else:
                if isinstance(e, PushError):
                    logger.error(f"{self._spec.name}: push failed during {failed_phase.name}: {e}")
                else:
                    logger.exception(f"{self._spec.name}: unexpected error during {failed_phase.name}")
                self._transition(PushPhase.FAILED)
                self._transition(PushPhase.IDLE)

        self._last_result = result
        if self._on_cycle:
            try:
                self._on_cycle(result)
            except Exception:
                logger.exception("Cycle callback failed")
        return result

    def _plan(
        self, old: FileIndex, new: FileIndex, force: bool, carried: set[str]
    ) -> SyncPlan:
        plan = diff(old, new)
        if not force:
            return plan
        # Forced: rewrite everything readable, keep deletions
        rewrite = plan.unchanged - carried
        return SyncPlan(
            added=plan.added,
            modified=plan.modified | rewrite,
            unchanged=plan.unchanged - rewrite,
            deleted=plan.deleted,
        )

    def _run_commands(self, cancel: CancelToken) -> None:
        for command in (self._spec.build_command, self._spec.run_command):
            if command:
                cancel.raise_if_cancelled()
                self._transport.run_command(command, cancel)

    def _commit(
        self,
        state: PushState,
        new_index: FileIndex,
        summary: SyncSummary,
        reconciled: ReconcileResult,
    ) -> None:
        committed_index = new_index.replace(summary.delivered)
        unchanged = (
            state.last_successful_generation > 0
            and committed_index == state.index
            and reconciled.declaration_hash == state.last_reconcile_hash
            and reconciled.applied == state.applied_refs
        )
        if unchanged:
            logger.debug(f"{self._spec.name}: nothing to commit")
            return

        new_state = state.advance(committed_index, reconciled.declaration_hash, reconciled.applied)
        self._store.save(new_state)
        self._state = new_state
        logger.info(
            f"{self._spec.name}: committed generation {new_state.last_successful_generation}"
        )

    # === Watch mode ===

    def request_cycle(self) -> None:
        """Ask for a cycle; requests during a busy cycle coalesce into one."""
        with self._cond:
            self._pending = True
            self._cond.notify_all()

    def start_watching(self, initial_push: bool = True) -> WatchHandle:
        """Start the watcher and the control loop in the background.

        Args:
            initial_push: Run a cycle immediately instead of waiting for the
                first change.

        Returns:
            WatchHandle to stop the loop.

        Raises:
            RuntimeError: If already watching or aborted.
        """
        if self._phase is PushPhase.ABORTED:
            raise RuntimeError(f"Push controller for {self._spec.name} was aborted")
        if self._watching:
            raise RuntimeError(f"Already watching {self._root}")

        token = CancelToken()
        watcher = ChangeWatcher(
            self._root,
            on_trigger=self.request_cycle,
            ignore_patterns=self._ignore,
            debounce_ms=self._config.debounce_ms,
        )
        watcher.start()
        self._watching = True
        if initial_push:
            self.request_cycle()

        thread = threading.Thread(
            target=self._watch_loop,
            args=(token,),
            name=f"PushController-{self._spec.name}",
            daemon=True,
        )
        thread.start()
        logger.info(f"Watching {self._root} for component {self._spec.name}")
        return WatchHandle(self, watcher, thread, token)

    def _watch_loop(self, token: CancelToken) -> None:
        try:
            while not token.cancelled:
                with self._cond:
                    while not self._pending and not token.cancelled:
                        self._cond.wait(timeout=0.1)
                    if token.cancelled:
                        break
                    self._pending = False

                with self._cycle_lock:
                    if token.cancelled:
                        break
                    result = self._run_cycle(False, token)
                if result.aborted:
                    break
        finally:
            with self._cycle_lock:
                if self._phase is not PushPhase.ABORTED:
                    self._transition(PushPhase.ABORTED)
            self._watching = False
            logger.info(f"Stopped watching component {self._spec.name}")

    def _wake(self) -> None:
        with self._cond:
            self._cond.notify_all()


class WatchHandle:
    """Cancel handle for a running watch loop."""

    def __init__(
        self,
        controller: PushController,
        watcher: ChangeWatcher,
        thread: threading.Thread,
        token: CancelToken,
    ) -> None:
        self._controller = controller
        self._watcher = watcher
        self._thread = thread
        self._token = token

    @property
    def token(self) -> CancelToken:
        """Get the cancel token shared with in-flight operations."""
        return self._token

    @property
    def is_running(self) -> bool:
        """Check if the control loop is alive."""
        return self._thread.is_alive()

    def stop(self, timeout: float = 10.0) -> None:
        """Stop watching, cancel in-flight work and join the loop."""
        self._token.cancel("watch stopped")
        self._watcher.stop()
        self._controller._wake()
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning("Push loop did not stop within %.1fs", timeout)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the loop exits.

        Returns:
            True if the loop exited within timeout.
        """
        self._thread.join(timeout=timeout)
        return not self._thread.is_alive()

    def __enter__(self) -> WatchHandle:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.stop()
