"""Push control loop and its persisted state."""

from devpush.push.controller import CycleResult, PushController, PushPhase, WatchHandle
from devpush.push.state import PushState, PushStateStore, StoredRef, default_state_path

__all__ = [
    "CycleResult",
    "PushController",
    "PushPhase",
    "PushState",
    "PushStateStore",
    "StoredRef",
    "WatchHandle",
    "default_state_path",
]
