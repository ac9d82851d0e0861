"""devpush - iterative push of a local source tree into a cluster component.

The public surface is the PushController: ``run_once()`` for a single
cycle and ``start_watching()`` for a debounced background loop.
"""

from devpush.cluster import ComponentSpec, PortSpec, StorageMount
from devpush.core import CancelToken, PushConfig
from devpush.push import CycleResult, PushController, PushPhase, WatchHandle

__version__ = "0.1.0"

__all__ = [
    "CancelToken",
    "ComponentSpec",
    "CycleResult",
    "PortSpec",
    "PushConfig",
    "PushController",
    "PushPhase",
    "StorageMount",
    "WatchHandle",
    "__version__",
]
