"""Reconciliation of cluster resources against a ComponentSpec.

Decision table, per kind+name:
    | desired | live               | action                         |
    |---------|--------------------|--------------------------------|
    | yes     | absent             | create                         |
    | yes     | same declaration   | nothing                        |
    | yes     | differs            | update with live version token |
    | no      | owned by component | delete with live version token |
    | no      | not owned          | nothing                        |

Every cluster call runs under the RetryScheduler. A stale version raises
ConflictError, which is classified transient: the retried action re-reads
the live resource and re-applies, it never overwrites blindly.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum

from devpush.cluster.component import ComponentSpec
from devpush.cluster.resources import (
    ClusterAPI,
    ClusterResourceSet,
    Resource,
    ResourceRef,
    desired_resources,
)
from devpush.core.cancel import CancelToken
from devpush.core.config import DEFAULT_REMOTE_ROOT
from devpush.core.errors import NotFoundError
from devpush.sync.retry import RetryScheduler

logger = logging.getLogger(__name__)


class ApplyOutcome(Enum):
    """What applying one resource did."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    UNCHANGED = "unchanged"


@dataclass
class ReconcilePlan:
    """Mutations needed to converge live state on the desired state."""

    create: list[Resource] = field(default_factory=list)
    update: list[Resource] = field(default_factory=list)
    delete: list[Resource] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        """Check if no mutation is needed."""
        return not (self.create or self.update or self.delete)


@dataclass
class ReconcileResult:
    """Outcome of a reconcile call.

    Attributes:
        declaration_hash: Hash to store as the last reconcile hash.
        applied: Refs left in place for the component after this call.
        created: Refs created.
        updated: Refs updated.
        deleted: Refs deleted.
        skipped: True when the hash short-circuit avoided every cluster call.
    """

    declaration_hash: str
    applied: list[ResourceRef] = field(default_factory=list)
    created: list[ResourceRef] = field(default_factory=list)
    updated: list[ResourceRef] = field(default_factory=list)
    deleted: list[ResourceRef] = field(default_factory=list)
    skipped: bool = False

    @property
    def changed(self) -> bool:
        """Check if any mutating call was made."""
        return bool(self.created or self.updated or self.deleted)


class ReconcileManager:
    """Converges a component's cluster resources on its declaration.

    Usage:
        manager = ReconcileManager(cluster, retry)
        result = manager.reconcile(spec, known_refs=state.applied_refs,
                                   last_hash=state.last_reconcile_hash)
    """

    def __init__(
        self,
        cluster: ClusterAPI,
        retry: RetryScheduler,
        source_mount_path: str = DEFAULT_REMOTE_ROOT,
    ) -> None:
        """Initialize the manager.

        Args:
            cluster: Cluster API client.
            retry: Scheduler wrapping every cluster call.
            source_mount_path: Remote directory the source tree is synced to.
        """
        self._cluster = cluster
        self._retry = retry
        self._source_mount_path = source_mount_path

    def desired(self, spec: ComponentSpec) -> dict[ResourceRef, Resource]:
        """Resources the component declares."""
        return desired_resources(spec, self._source_mount_path)

    def declaration_hash(self, spec: ComponentSpec) -> str:
        """Hash of everything the desired resources depend on."""
        digest = hashlib.sha256()
        digest.update(spec.spec_hash().encode("ascii"))
        digest.update(b"\0")
        digest.update(self._source_mount_path.encode("utf-8"))
        return digest.hexdigest()

    def fetch_live(
        self,
        spec: ComponentSpec,
        known_refs: Iterable[ResourceRef] = (),
        cancel: CancelToken | None = None,
    ) -> ClusterResourceSet:
        """Read the live state of desired and previously applied resources.

        Resources that do not exist are omitted from the returned set.
        """
        cancel = cancel or CancelToken()
        refs = sorted(set(self.desired(spec)) | set(known_refs), key=_creation_key)
        live = [r for r in (self._get(ref, cancel) for ref in refs) if r is not None]
        return ClusterResourceSet(live)

    def plan(self, spec: ComponentSpec, live: ClusterResourceSet) -> ReconcilePlan:
        """Diff the desired resources against a live set by kind+name."""
        desired = self.desired(spec)
        plan = ReconcilePlan()

        for ref in sorted(desired, key=_creation_key):
            want = desired[ref]
            have = live.get(ref)
            if have is None:
                plan.create.append(want)
            elif not want.same_declaration(have):
                plan.update.append(want)

        for resource in sorted(live.values(), key=lambda r: _creation_key(r.ref), reverse=True):
            if resource.ref in desired:
                continue
            if resource.owned_by(spec.name):
                plan.delete.append(resource)
            else:
                logger.debug(f"Leaving {resource.ref} alone: not owned by {spec.name}")

        return plan

    def reconcile(
        self,
        spec: ComponentSpec,
        known_refs: Iterable[ResourceRef] = (),
        last_hash: str | None = None,
        cancel: CancelToken | None = None,
        force: bool = False,
    ) -> ReconcileResult:
        """Create, update and delete resources until live matches desired.

        Args:
            spec: Component declaration.
            known_refs: Refs applied by the last committed reconcile.
            last_hash: declaration_hash() stored by the last committed cycle.
            cancel: Cancellation token for cluster calls.
            force: Skip the hash short-circuit.

        Returns:
            ReconcileResult describing the mutations performed.

        Raises:
            RetryExhaustedError: A cluster call kept failing transiently or
                kept conflicting.
            FatalAuthError: The cluster rejected our credentials.
            PushCancelledError: The cycle was cancelled.
        """
        cancel = cancel or CancelToken()
        declaration_hash = self.declaration_hash(spec)
        known = list(known_refs)

        if not force and last_hash == declaration_hash:
            logger.debug(f"Component {spec.name} unchanged since last reconcile")
            return ReconcileResult(
                declaration_hash=declaration_hash,
                applied=sorted(set(known) or set(self.desired(spec)), key=_creation_key),
                skipped=True,
            )

        live = self.fetch_live(spec, known, cancel)
        plan = self.plan(spec, live)
        result = ReconcileResult(declaration_hash=declaration_hash)
        desired = self.desired(spec)

        for resource in plan.create + plan.update:
            outcome = self._retry.call(
                f"apply {resource.ref}",
                lambda c, r=resource: self._apply(r, c),
                cancel,
            )
            if outcome is ApplyOutcome.CREATED:
                result.created.append(resource.ref)
            elif outcome is ApplyOutcome.UPDATED:
                result.updated.append(resource.ref)

        for resource in plan.delete:
            outcome = self._retry.call(
                f"delete {resource.ref}",
                lambda c, r=resource: self._remove(r.ref, spec.name, c),
                cancel,
            )
            if outcome is ApplyOutcome.DELETED:
                result.deleted.append(resource.ref)

        result.applied = sorted(desired, key=_creation_key)
        if result.changed:
            logger.info(
                f"Reconciled {spec.name}: {len(result.created)} created, "
                f"{len(result.updated)} updated, {len(result.deleted)} deleted"
            )
        else:
            logger.info(f"Component {spec.name} resources already up to date")
        return result

    def _get(self, ref: ResourceRef, cancel: CancelToken) -> Resource | None:
        def action(c: CancelToken) -> Resource | None:
            try:
                return self._cluster.get(ref.kind, ref.name, cancel=c)
            except NotFoundError:
                return None

        return self._retry.call(f"get {ref}", action, cancel)

    def _apply(self, want: Resource, cancel: CancelToken) -> ApplyOutcome:
        """Create or update one resource from a fresh read.

        Re-reading on every attempt is what makes a conflict retry safe.
        """
        try:
            have = self._cluster.get(want.kind, want.name, cancel=cancel)
        except NotFoundError:
            self._cluster.create(want, cancel=cancel)
            logger.debug(f"Created {want.ref}")
            return ApplyOutcome.CREATED

        if want.same_declaration(have):
            return ApplyOutcome.UNCHANGED

        if have.version is None:
            raise ValueError(f"Live {want.ref} has no version token")
        self._cluster.update(want, have.version, cancel=cancel)
        logger.debug(f"Updated {want.ref} (was version {have.version})")
        return ApplyOutcome.UPDATED

    def _remove(self, ref: ResourceRef, component: str, cancel: CancelToken) -> ApplyOutcome:
        try:
            have = self._cluster.get(ref.kind, ref.name, cancel=cancel)
        except NotFoundError:
            return ApplyOutcome.UNCHANGED

        if not have.owned_by(component):
            logger.warning(f"Not deleting {ref}: ownership labels changed")
            return ApplyOutcome.UNCHANGED

        try:
            self._cluster.delete(ref.kind, ref.name, have.version, cancel=cancel)
        except NotFoundError:
            return ApplyOutcome.UNCHANGED
        logger.debug(f"Deleted {ref}")
        return ApplyOutcome.DELETED


def _creation_key(ref: ResourceRef) -> tuple[int, str]:
    return (ref.kind.order, ref.name)
