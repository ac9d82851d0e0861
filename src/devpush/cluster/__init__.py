"""Cluster side of a push: component declaration and reconciliation."""

from devpush.cluster.component import ComponentSpec, PortSpec, StorageMount
from devpush.cluster.reconcile import (
    ApplyOutcome,
    ReconcileManager,
    ReconcilePlan,
    ReconcileResult,
)
from devpush.cluster.resources import (
    COMPONENT_LABEL,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    ClusterAPI,
    ClusterResourceSet,
    Resource,
    ResourceKind,
    ResourceRef,
    component_labels,
    desired_resources,
)

__all__ = [
    # Declaration
    "ComponentSpec",
    "PortSpec",
    "StorageMount",
    # Resources
    "COMPONENT_LABEL",
    "MANAGED_BY_LABEL",
    "MANAGED_BY_VALUE",
    "ClusterAPI",
    "ClusterResourceSet",
    "Resource",
    "ResourceKind",
    "ResourceRef",
    "component_labels",
    "desired_resources",
    # Reconcile
    "ApplyOutcome",
    "ReconcileManager",
    "ReconcilePlan",
    "ReconcileResult",
]
