"""File system watcher with debouncing for push triggers.

This module provides:
- DebouncedTrigger: Coalesces bursts of notifications into one callback
- ChangeWatcher: Watches a directory using watchdog and fires a trigger
  once the tree has been quiet for a full debounce window

The watcher never runs push logic itself; it only calls ``on_trigger``.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

from watchdog.events import (
    DirModifiedEvent,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from devpush.sync.ignore import IgnorePatterns

if TYPE_CHECKING:
    from watchdog.observers.api import BaseObserver

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_MS = 300


class DebouncedTrigger:
    """Fires a callback once notifications stop for a full window.

    Every notify() while a timer is pending resets it, so a steady stream of
    events keeps postponing the callback until the stream pauses.
    """

    def __init__(self, window_s: float, callback: Callable[[], None]) -> None:
        """Initialize the trigger.

        Args:
            window_s: Quiet period in seconds.
            callback: Called from the timer thread when the window elapses.
        """
        self._window_s = window_s
        self._callback = callback
        self._lock = threading.Lock()
        self._timer: threading.Timer | None = None
        self._generation = 0
        self._fired = 0

    @property
    def pending(self) -> bool:
        """Check if a timer is armed."""
        with self._lock:
            return self._timer is not None

    @property
    def fired_count(self) -> int:
        """Number of times the callback has fired."""
        return self._fired

    def notify(self) -> None:
        """Record an event, restarting the quiet window."""
        with self._lock:
            if self._timer:
                self._timer.cancel()
            self._generation += 1
            generation = self._generation
            self._timer = threading.Timer(self._window_s, self._fire, args=(generation,))
            self._timer.daemon = True
            self._timer.start()

    def cancel(self) -> None:
        """Drop any pending timer without firing."""
        with self._lock:
            if self._timer:
                self._timer.cancel()
                self._timer = None
            self._generation += 1

    def _fire(self, generation: int) -> None:
        with self._lock:
            # A notify() racing with an expiring timer re-arms a newer one
            if generation != self._generation:
                return
            self._timer = None
            self._fired += 1
        try:
            self._callback()
        except Exception:
            logger.exception("Trigger callback failed")


class _TriggerEventHandler(FileSystemEventHandler):
    """Filters watchdog events and forwards relevant ones to a trigger."""

    def __init__(
        self,
        base_path: Path,
        trigger: DebouncedTrigger,
        ignore_patterns: IgnorePatterns,
    ) -> None:
        super().__init__()
        self._base_path = base_path
        self._trigger = trigger
        self._ignore = ignore_patterns

    def _is_relevant(self, raw_path: str | bytes) -> bool:
        if isinstance(raw_path, bytes):
            raw_path = raw_path.decode("utf-8", errors="replace")
        if not raw_path:
            return False
        path = Path(raw_path)
        if path == self._base_path:
            return False
        try:
            rel_path = path.relative_to(self._base_path).as_posix()
        except ValueError:
            return False
        # Deleted paths cannot be stat'ed; match both ways for dir patterns
        is_dir = path.is_dir()
        if self._ignore.matches(rel_path, is_dir=is_dir):
            return False
        if not is_dir and not path.exists() and self._ignore.matches(rel_path, is_dir=True):
            return False
        return True

    def on_any_event(self, event: FileSystemEvent) -> None:
        """Notify the trigger for events on non-ignored paths."""
        if event.event_type in ("opened", "closed", "closed_no_write"):
            return
        # Parent directory mtime bumps carry no information of their own
        if isinstance(event, DirModifiedEvent):
            return

        relevant = self._is_relevant(event.src_path)
        dest_path = getattr(event, "dest_path", "")
        if not relevant and dest_path:
            relevant = self._is_relevant(dest_path)
        if not relevant:
            return

        logger.debug("Watcher saw %s on %s", event.event_type, event.src_path)
        self._trigger.notify()


class ChangeWatcher:
    """Watches a sync root and fires a debounced trigger on changes.

    Usage:
        watcher = ChangeWatcher(root, ignore, on_trigger=controller.request_cycle)
        with watcher:
            ...
    """

    def __init__(
        self,
        watch_path: Path,
        on_trigger: Callable[[], None],
        ignore_patterns: IgnorePatterns | None = None,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
    ) -> None:
        """Initialize the change watcher.

        Args:
            watch_path: Directory to watch.
            on_trigger: Called once per quiet period after changes.
            ignore_patterns: Patterns for paths whose events are dropped.
            debounce_ms: Debounce window in milliseconds.
        """
        self._watch_path = Path(watch_path).resolve()
        if not self._watch_path.is_dir():
            raise ValueError(f"Watch path must be a directory: {watch_path}")

        self._ignore = ignore_patterns or IgnorePatterns.for_root(self._watch_path)
        self._trigger = DebouncedTrigger(debounce_ms / 1000.0, on_trigger)
        self._handler = _TriggerEventHandler(self._watch_path, self._trigger, self._ignore)
        self._observer: BaseObserver | None = None
        self._lock = threading.Lock()

    @property
    def watch_path(self) -> Path:
        """Get the watched directory path."""
        return self._watch_path

    @property
    def trigger(self) -> DebouncedTrigger:
        """Get the debounced trigger."""
        return self._trigger

    @property
    def is_running(self) -> bool:
        """Check if the watcher is running."""
        return self._observer is not None

    def start(self) -> None:
        """Start watching for changes."""
        with self._lock:
            if self._observer is not None:
                return
            observer = Observer()
            observer.schedule(self._handler, str(self._watch_path), recursive=True)
            observer.start()
            self._observer = observer
        logger.info(f"Waiting for something to change in {self._watch_path}")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop watching and release the OS watch handles."""
        with self._lock:
            observer = self._observer
            self._observer = None
        if observer is None:
            return

        self._trigger.cancel()
        observer.stop()
        observer.join(timeout=timeout)
        if observer.is_alive():
            logger.warning("Watch observer did not stop within %.1fs", timeout)
        else:
            logger.debug("Watcher stopped for %s", self._watch_path)

    def __enter__(self) -> ChangeWatcher:
        """Context manager entry."""
        self.start()
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.stop()
