"""Generic sync units and the default unit registry.

Three shapes cover the built-in kinds:

- ResourceSyncer: the virtual object is the source of truth and is copied
  down into the target namespace under a translated name.
- HostResourceSyncer: a cluster scoped host object is mirrored into the
  virtual cluster under the same name.
- Fake syncers: virtual nodes and persistent volumes that exist only
  because virtual pods or claims reference them.
"""

from __future__ import annotations

import copy
import hashlib
import logging
from functools import partial
from typing import Any, Optional

from ...api.exceptions import ConflictError
from ..domain.entities import NamespacedName, RegisterContext, SyncContext
from ..domain.ports import FakeSyncer, IndicesRegisterer, Initializer, Syncer, SyncUnit
from ..use_cases.create_syncers import UnitRegistry, group

logger = logging.getLogger(__name__)

MANAGED_BY_LABEL = "vcluster.loft.sh/managed-by"
OBJECT_NAME_ANNOTATION = "vcluster.loft.sh/object-name"
OBJECT_NAMESPACE_ANNOTATION = "vcluster.loft.sh/object-namespace"
HOST_COPY_LABEL = "vcluster.loft.sh/copied-from-host"
FAKE_LABEL = "vcluster.loft.sh/fake"
PHYSICAL_NAME_INDEX = "index.vcluster.loft.sh/physical-name"

MAX_NAME_LENGTH = 63

# Server assigned metadata that must not be copied between clusters
SERVER_METADATA = (
    "uid",
    "resourceVersion",
    "creationTimestamp",
    "generation",
    "managedFields",
    "ownerReferences",
    "selfLink",
    "deletionTimestamp",
)

VOLUME_SNAPSHOT_CRDS = (
    "volumesnapshotclasses.snapshot.storage.k8s.io",
    "volumesnapshotcontents.snapshot.storage.k8s.io",
    "volumesnapshots.snapshot.storage.k8s.io",
)


def safe_concat_name(*parts: str) -> str:
    """Join parts with "-", hashing the tail if the result is too long."""
    name = "-".join(parts)
    if len(name) > MAX_NAME_LENGTH:
        digest = hashlib.sha256(name.encode()).hexdigest()[:10]
        name = f"{name[:MAX_NAME_LENGTH - 11]}-{digest}"
    return name


def clean_copy(obj: dict[str, Any]) -> dict[str, Any]:
    """Deep copy without status and server assigned metadata."""
    result = copy.deepcopy(obj)
    result.pop("status", None)
    metadata = result.setdefault("metadata", {})
    for key in SERVER_METADATA:
        metadata.pop(key, None)
    return result


def body_of(obj: dict[str, Any]) -> dict[str, Any]:
    """Everything except metadata and status."""
    return {k: v for k, v in obj.items() if k not in ("metadata", "status", "kind", "apiVersion")}


# ============================================
# Virtual -> Host
# ============================================

class ResourceSyncer(SyncUnit, Syncer, IndicesRegisterer):
    """Copies virtual objects of one kind down to the host.

    Namespaced objects land in the target namespace as
    "<name>-x-<namespace>-x-<suffix>"; cluster scoped ones as
    "vcluster-<name>-x-<target namespace>-x-<suffix>".
    """

    # spec fields the host assigns on its own
    host_spec_fields: tuple[str, ...] = ()

    def __init__(
        self,
        ctx: RegisterContext,
        kind: str,
        name: Optional[str] = None,
        namespaced: bool = True,
    ):
        self.ctx = ctx
        self._kind = kind
        self._name = name or kind
        self.namespaced = namespaced
        self.suffix = ctx.options.name

    @property
    def name(self) -> str:
        return self._name

    @property
    def kind(self) -> str:
        return self._kind

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self._name!r}, kind={self._kind!r})"

    # ----------------------------------------
    # Name Translation
    # ----------------------------------------

    def physical_name(self, virtual: NamespacedName) -> str:
        if self.namespaced:
            return safe_concat_name(virtual.name, "x", virtual.namespace, "x", self.suffix)
        return safe_concat_name("vcluster", virtual.name, "x", self.ctx.target_namespace, "x", self.suffix)

    def virtual_to_physical(self, request: NamespacedName) -> NamespacedName:
        namespace = self.ctx.target_namespace if self.namespaced else ""
        return NamespacedName(namespace, self.physical_name(request))

    def physical_to_virtual(self, physical_obj: dict[str, Any]) -> Optional[NamespacedName]:
        metadata = physical_obj.get("metadata") or {}
        if (metadata.get("labels") or {}).get(MANAGED_BY_LABEL) != self.suffix:
            return None

        annotations = metadata.get("annotations") or {}
        name = annotations.get(OBJECT_NAME_ANNOTATION)
        if name:
            return NamespacedName(annotations.get(OBJECT_NAMESPACE_ANNOTATION, ""), name)

        # objects created before the annotations existed
        matches = self.ctx.virtual_manager.get_cache().by_index(
            self.kind, PHYSICAL_NAME_INDEX, metadata.get("name", "")
        )
        if matches:
            return NamespacedName.of(matches[0])
        return None

    def register_indices(self, ctx: RegisterContext) -> None:
        ctx.virtual_manager.get_cache().index_field(
            self.kind,
            PHYSICAL_NAME_INDEX,
            lambda obj: [self.physical_name(NamespacedName.of(obj))],
        )

    # ----------------------------------------
    # Reconciliation
    # ----------------------------------------

    def translate(self, virtual_obj: dict[str, Any]) -> dict[str, Any]:
        """Physical object for a virtual one."""
        identity = NamespacedName.of(virtual_obj)
        physical = clean_copy(virtual_obj)

        metadata = physical["metadata"]
        target = self.virtual_to_physical(identity)
        metadata["name"] = target.name
        if target.namespace:
            metadata["namespace"] = target.namespace
        else:
            metadata.pop("namespace", None)
        metadata.setdefault("labels", {})[MANAGED_BY_LABEL] = self.suffix
        annotations = metadata.setdefault("annotations", {})
        annotations[OBJECT_NAME_ANNOTATION] = identity.name
        annotations[OBJECT_NAMESPACE_ANNOTATION] = identity.namespace

        spec = physical.get("spec")
        if isinstance(spec, dict):
            for key in self.host_spec_fields:
                spec.pop(key, None)
        return physical

    async def sync_down(self, ctx: SyncContext, virtual_obj: dict[str, Any]) -> None:
        physical = self.translate(virtual_obj)
        logger.info(f"Create physical {self.kind} {NamespacedName.of(physical)}")
        try:
            await ctx.physical_client.create(self.kind, physical)
        except ConflictError:
            logger.debug(f"Physical {self.kind} {NamespacedName.of(physical)} already exists")

    async def sync_up(self, ctx: SyncContext, physical_obj: dict[str, Any]) -> None:
        if self.physical_to_virtual(physical_obj) is None:
            return
        logger.info(f"Delete physical {self.kind} {NamespacedName.of(physical_obj)}, virtual object is gone")
        await super().sync_up(ctx, physical_obj)

    async def sync(
        self,
        ctx: SyncContext,
        physical_obj: dict[str, Any],
        virtual_obj: dict[str, Any],
    ) -> None:
        if self.physical_to_virtual(physical_obj) is None:
            logger.warning(
                f"Physical {self.kind} {NamespacedName.of(physical_obj)} exists but is not managed, skipping"
            )
            return

        desired = self.translate(virtual_obj)
        updated = copy.deepcopy(physical_obj)
        for key, value in body_of(desired).items():
            if isinstance(value, dict) and isinstance(updated.get(key), dict):
                updated[key] = {**updated[key], **value}
            else:
                updated[key] = value

        metadata = updated.setdefault("metadata", {})
        metadata["labels"] = desired["metadata"].get("labels", {})
        metadata["annotations"] = desired["metadata"].get("annotations", {})

        if updated != physical_obj:
            logger.info(f"Update physical {self.kind} {NamespacedName.of(physical_obj)}")
            await ctx.physical_client.update(self.kind, updated)


class ServiceResourceSyncer(ResourceSyncer):
    """Services get their cluster IP from the host."""

    host_spec_fields = ("clusterIP", "clusterIPs", "healthCheckNodePort")


class CRDResourceSyncer(ResourceSyncer, Initializer):
    """ResourceSyncer for a kind served by custom resource definitions.

    init() copies the definitions from the host into the virtual cluster.
    """

    def __init__(self, ctx: RegisterContext, kind: str, crds: tuple[str, ...] = (), **kwargs):
        super().__init__(ctx, kind, **kwargs)
        self.crds = crds

    async def init(self, ctx: RegisterContext) -> None:
        host = ctx.physical_manager.get_client()
        virtual = ctx.virtual_manager.get_client()

        for crd in self.crds:
            if ctx.context.cancelled:
                logger.debug(f"{self.name} init cancelled")
                return

            definition = clean_copy(await host.get("customresourcedefinitions", "", crd))
            try:
                await virtual.create("customresourcedefinitions", definition)
                logger.info(f"Created custom resource definition {crd}")
            except ConflictError:
                logger.debug(f"Custom resource definition {crd} already exists")


# ============================================
# Host -> Virtual
# ============================================

class HostResourceSyncer(SyncUnit, Syncer):
    """Mirrors cluster scoped host objects into the virtual cluster."""

    def __init__(self, ctx: RegisterContext, kind: str, name: Optional[str] = None):
        self.ctx = ctx
        self._kind = kind
        self._name = name or kind

    @property
    def name(self) -> str:
        return self._name

    @property
    def kind(self) -> str:
        return self._kind

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self._name!r}, kind={self._kind!r})"

    def virtual_to_physical(self, request: NamespacedName) -> NamespacedName:
        return NamespacedName("", request.name)

    def physical_to_virtual(self, physical_obj: dict[str, Any]) -> Optional[NamespacedName]:
        return NamespacedName("", NamespacedName.of(physical_obj).name)

    def translate(self, physical_obj: dict[str, Any]) -> dict[str, Any]:
        virtual = clean_copy(physical_obj)
        virtual["metadata"].setdefault("labels", {})[HOST_COPY_LABEL] = "true"
        return virtual

    async def sync_up(self, ctx: SyncContext, physical_obj: dict[str, Any]) -> None:
        logger.info(f"Copy host {self.kind} {NamespacedName.of(physical_obj)} into virtual cluster")
        try:
            await ctx.virtual_client.create(self.kind, self.translate(physical_obj))
        except ConflictError:
            logger.debug(f"Virtual {self.kind} {NamespacedName.of(physical_obj)} already exists")

    async def sync_down(self, ctx: SyncContext, virtual_obj: dict[str, Any]) -> None:
        # host object is gone, drop our copy but leave user created objects alone
        labels = (virtual_obj.get("metadata") or {}).get("labels") or {}
        if labels.get(HOST_COPY_LABEL) != "true":
            return
        identity = NamespacedName.of(virtual_obj)
        logger.info(f"Delete virtual {self.kind} {identity}, host object is gone")
        await ctx.virtual_client.delete(self.kind, identity.namespace, identity.name)

    async def sync(
        self,
        ctx: SyncContext,
        physical_obj: dict[str, Any],
        virtual_obj: dict[str, Any],
    ) -> None:
        desired = self.translate(physical_obj)
        if body_of(desired) == body_of(virtual_obj):
            return
        updated = copy.deepcopy(virtual_obj)
        updated.update(body_of(desired))
        await ctx.virtual_client.update(self.kind, updated)


# ============================================
# Fake Objects
# ============================================

class _FakeObjectSyncer(SyncUnit, FakeSyncer):
    """Cluster scoped virtual objects kept alive by references from another kind."""

    referencing_kind = ""

    def __init__(self, ctx: RegisterContext):
        self.ctx = ctx

    @property
    def name(self) -> str:
        return f"fake-{self.kind}"

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}()"

    def reference(self, obj: dict[str, Any]) -> str:
        raise NotImplementedError

    def triggers(self):
        def map_request(obj: dict[str, Any]) -> Optional[NamespacedName]:
            name = self.reference(obj)
            return NamespacedName("", name) if name else None

        return {self.referencing_kind: map_request}

    async def referencing(self, ctx: SyncContext, name: str) -> list[dict[str, Any]]:
        objects = await ctx.virtual_client.list(self.referencing_kind)
        return [obj for obj in objects if self.reference(obj) == name]

    def build(self, name: str, referrers: list[dict[str, Any]]) -> dict[str, Any]:
        raise NotImplementedError

    async def fake_sync_up(self, ctx: SyncContext, request: NamespacedName) -> None:
        referrers = await self.referencing(ctx, request.name)
        if not referrers:
            return
        logger.info(f"Create fake {self.kind} {request.name}")
        try:
            await ctx.virtual_client.create(self.kind, self.build(request.name, referrers))
        except ConflictError:
            logger.debug(f"Fake {self.kind} {request.name} already exists")

    async def fake_sync(self, ctx: SyncContext, virtual_obj: dict[str, Any]) -> None:
        metadata = virtual_obj.get("metadata") or {}
        if (metadata.get("labels") or {}).get(FAKE_LABEL) != "true":
            return
        name = metadata.get("name", "")
        if await self.referencing(ctx, name):
            return
        logger.info(f"Delete fake {self.kind} {name}, nothing references it")
        await ctx.virtual_client.delete(self.kind, "", name)


class FakeNodeSyncer(_FakeObjectSyncer):
    """Virtual nodes for the node names virtual pods are scheduled to."""

    referencing_kind = "pods"

    @property
    def kind(self) -> str:
        return "nodes"

    def reference(self, obj: dict[str, Any]) -> str:
        return (obj.get("spec") or {}).get("nodeName", "")

    def build(self, name: str, referrers: list[dict[str, Any]]) -> dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "Node",
            "metadata": {
                "name": name,
                "labels": {FAKE_LABEL: "true", "kubernetes.io/hostname": name},
            },
            "spec": {},
            "status": {
                "conditions": [{"type": "Ready", "status": "True", "reason": "KubeletReady"}],
            },
        }


class FakePersistentVolumeSyncer(_FakeObjectSyncer):
    """Virtual persistent volumes for the volume names virtual claims are bound to."""

    referencing_kind = "persistentvolumeclaims"

    @property
    def kind(self) -> str:
        return "persistentvolumes"

    def reference(self, obj: dict[str, Any]) -> str:
        return (obj.get("spec") or {}).get("volumeName", "")

    def build(self, name: str, referrers: list[dict[str, Any]]) -> dict[str, Any]:
        claim = referrers[0]
        spec = claim.get("spec") or {}
        identity = NamespacedName.of(claim)
        return {
            "apiVersion": "v1",
            "kind": "PersistentVolume",
            "metadata": {"name": name, "labels": {FAKE_LABEL: "true"}},
            "spec": {
                "accessModes": spec.get("accessModes", ["ReadWriteOnce"]),
                "capacity": (spec.get("resources") or {}).get("requests", {}),
                "claimRef": {"namespace": identity.namespace, "name": identity.name},
                "storageClassName": spec.get("storageClassName", ""),
                "persistentVolumeReclaimPolicy": "Delete",
            },
            "status": {"phase": "Bound"},
        }


# ============================================
# Registry
# ============================================

def new_node_syncer(ctx: RegisterContext) -> SyncUnit:
    if ctx.is_enabled("nodes"):
        return HostResourceSyncer(ctx, "nodes")
    return FakeNodeSyncer(ctx)


def new_persistent_volume_syncer(ctx: RegisterContext) -> SyncUnit:
    if ctx.is_enabled("persistentvolumes"):
        return ResourceSyncer(ctx, "persistentvolumes", namespaced=False)
    return FakePersistentVolumeSyncer(ctx)


def down(kind: str, **kwargs):
    return partial(ResourceSyncer, kind=kind, **kwargs)


def default_registry() -> UnitRegistry:
    """Built-in units in bring-up order."""
    return UnitRegistry([
        group("services", partial(ServiceResourceSyncer, kind="services")),
        group("configmaps", down("configmaps")),
        group("secrets", down("secrets")),
        group("endpoints", down("endpoints")),
        group("pods", down("pods")),
        group("events", down("events")),
        group("persistentvolumeclaims", down("persistentvolumeclaims")),
        group(
            "ingresses",
            down("ingresses"),
            partial(HostResourceSyncer, kind="ingressclasses"),
        ),
        group("storageclasses", down("storageclasses", namespaced=False)),
        group(
            "legacy-storageclasses",
            partial(HostResourceSyncer, kind="storageclasses", name="legacy-storageclasses"),
        ),
        group("priorityclasses", down("priorityclasses", namespaced=False)),
        group("nodes,fake-nodes", new_node_syncer),
        group("poddisruptionbudgets", down("poddisruptionbudgets")),
        group("networkpolicies", down("networkpolicies")),
        group(
            "volumesnapshots",
            partial(CRDResourceSyncer, kind="volumesnapshots", crds=VOLUME_SNAPSHOT_CRDS),
            partial(HostResourceSyncer, kind="volumesnapshotclasses"),
            down("volumesnapshotcontents", namespaced=False),
        ),
        group("serviceaccounts", down("serviceaccounts")),
        group("persistentvolumes,fake-persistentvolumes", new_persistent_volume_syncer),
    ])
