"""Cluster resources through one uniform interface.

This module provides:
- ResourceKind: The closed set of kinds a component owns
- ResourceRef: kind+name identity of a resource
- Resource: kind, name, labels, desired content and version token
- ClusterResourceSet: Live resources keyed by ResourceRef
- ClusterAPI: Protocol of the cluster client consumed by reconciliation
- desired_resources: Maps a ComponentSpec onto the resources it needs
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Protocol

from devpush.cluster.component import ComponentSpec
from devpush.core.cancel import CancelToken
from devpush.core.config import DEFAULT_REMOTE_ROOT

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "devpush"
COMPONENT_LABEL = "devpush.dev/component"


class ResourceKind(str, Enum):
    """Kinds of cluster objects a component may own.

    Values are ordered by creation priority: storage before the workload
    that mounts it, the workload before the service that selects it.
    """

    PERSISTENT_VOLUME_CLAIM = "PersistentVolumeClaim"
    DEPLOYMENT = "Deployment"
    SERVICE = "Service"

    @property
    def order(self) -> int:
        """Creation order of this kind."""
        return list(ResourceKind).index(self)


@dataclass(frozen=True, order=True)
class ResourceRef:
    """Identity of a cluster resource."""

    kind: ResourceKind
    name: str

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.name}"


@dataclass(frozen=True)
class Resource:
    """A cluster object reduced to what reconciliation compares.

    Attributes:
        kind: Resource kind.
        name: Resource name.
        labels: Labels, including the ownership labels.
        content: Declared content compared by value.
        version: Opaque version token; None for desired resources.
    """

    kind: ResourceKind
    name: str
    labels: Mapping[str, str] = field(default_factory=dict)
    content: Mapping[str, Any] = field(default_factory=dict)
    version: str | None = None

    @property
    def ref(self) -> ResourceRef:
        """Get the kind+name identity."""
        return ResourceRef(self.kind, self.name)

    def owned_by(self, component: str) -> bool:
        """Check if this resource carries the ownership labels of component."""
        return (
            self.labels.get(MANAGED_BY_LABEL) == MANAGED_BY_VALUE
            and self.labels.get(COMPONENT_LABEL) == component
        )

    def same_declaration(self, other: Resource) -> bool:
        """Value equality of everything but the version token."""
        return (
            self.ref == other.ref
            and dict(self.labels) == dict(other.labels)
            and _normalize(self.content) == _normalize(other.content)
        )

    def with_version(self, version: str | None) -> Resource:
        """Return a copy carrying a version token."""
        return replace(self, version=version)


def _normalize(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    return value


class ClusterResourceSet(Mapping[ResourceRef, Resource]):
    """Live resources currently associated with a component."""

    def __init__(self, resources: list[Resource] | None = None) -> None:
        self._resources: dict[ResourceRef, Resource] = {r.ref: r for r in resources or []}

    def __getitem__(self, ref: ResourceRef) -> Resource:
        return self._resources[ref]

    def __iter__(self) -> Iterator[ResourceRef]:
        return iter(self._resources)

    def __len__(self) -> int:
        return len(self._resources)

    def __repr__(self) -> str:
        return f"ClusterResourceSet({sorted(str(r) for r in self._resources)})"

    def owned_by(self, component: str) -> list[Resource]:
        """Resources labelled as owned by component."""
        return [r for r in self._resources.values() if r.owned_by(component)]


class ClusterAPI(Protocol):
    """Capabilities consumed from the cluster API client.

    Implementations raise NotFoundError, ConflictError,
    TransientTransportError and FatalAuthError as appropriate.
    """

    def get(self, kind: ResourceKind, name: str, *, cancel: CancelToken) -> Resource:
        """Fetch a live resource with its version token."""
        ...

    def create(self, resource: Resource, *, cancel: CancelToken) -> Resource:
        """Create a resource and return it with its version token."""
        ...

    def update(
        self,
        resource: Resource,
        expected_version: str,
        *,
        cancel: CancelToken,
    ) -> Resource:
        """Replace a resource if its version still matches."""
        ...

    def delete(
        self,
        kind: ResourceKind,
        name: str,
        expected_version: str | None,
        *,
        cancel: CancelToken,
    ) -> None:
        """Delete a resource if its version still matches."""
        ...


def component_labels(spec: ComponentSpec) -> dict[str, str]:
    """Labels stamped on every resource of a component."""
    return {
        MANAGED_BY_LABEL: MANAGED_BY_VALUE,
        COMPONENT_LABEL: spec.name,
    }


def storage_claim_name(spec: ComponentSpec, storage_name: str) -> str:
    """Name of the claim backing a storage mount."""
    return f"{spec.name}-{storage_name}"


def desired_resources(
    spec: ComponentSpec,
    source_mount_path: str = DEFAULT_REMOTE_ROOT,
) -> dict[ResourceRef, Resource]:
    """Compute the resources a component needs.

    Returns:
        Desired resources keyed by ref, without version tokens.
    """
    labels = component_labels(spec)
    resources: list[Resource] = []

    for mount in spec.storage:
        resources.append(
            Resource(
                kind=ResourceKind.PERSISTENT_VOLUME_CLAIM,
                name=storage_claim_name(spec, mount.name),
                labels=labels,
                content={
                    "accessModes": ["ReadWriteOnce"],
                    "size": mount.size,
                },
            )
        )

    resources.append(
        Resource(
            kind=ResourceKind.DEPLOYMENT,
            name=spec.name,
            labels=labels,
            content={
                "replicas": 1,
                "image": spec.image,
                "sourceType": spec.source_type,
                "env": [{"name": k, "value": v} for k, v in sorted(spec.env.items())],
                "ports": [
                    {"name": p.label, "containerPort": p.port, "protocol": p.protocol}
                    for p in spec.ports
                ],
                "volumeMounts": [
                    {"claim": storage_claim_name(spec, m.name), "mountPath": m.path}
                    for m in spec.storage
                ],
                "sourceMountPath": source_mount_path,
            },
        )
    )

    if spec.ports:
        resources.append(
            Resource(
                kind=ResourceKind.SERVICE,
                name=spec.name,
                labels=labels,
                content={
                    "selector": {COMPONENT_LABEL: spec.name},
                    "ports": [
                        {
                            "name": p.label,
                            "port": p.port,
                            "targetPort": p.port,
                            "protocol": p.protocol,
                        }
                        for p in spec.ports
                    ],
                },
            )
        )

    return {r.ref: r for r in resources}
