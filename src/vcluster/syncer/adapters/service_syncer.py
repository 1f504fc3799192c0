"""Service projection between two API surfaces.

A ServiceSyncer copies each mapped source service to its destination name.
Destination services are labeled with the syncer's name and only objects
carrying that label are ever updated or deleted.

When create_endpoints is set the destination service has no selector and
an Endpoints object of the same name points at the source service's
cluster IP. This is how host services become reachable from inside the
virtual cluster.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Optional

from ...api.exceptions import ConflictError, NotFoundError
from ..domain.cancellation import CancellationContext
from ..domain.entities import NamespacedName
from ..domain.ports import Controller, IClient, IManager, IServiceSyncer
from .registrar import get_or_none

logger = logging.getLogger(__name__)

CONTROLLED_BY_LABEL = "vcluster.loft.sh/controlled-by"


class ServiceSyncer(IServiceSyncer):
    """Projects the services named in sync_services.

    Attributes:
        sync_services: "namespace/name" of a source service -> destination
        from_manager: Manager of the API surface the services are read from
        to_manager: Manager of the API surface the services are written to
        create_namespace: Create missing destination namespaces
        create_endpoints: Manage Endpoints instead of copying the selector
    """

    def __init__(
        self,
        name: str,
        sync_services: dict[str, NamespacedName],
        from_manager: IManager,
        to_manager: IManager,
        create_namespace: bool = False,
        create_endpoints: bool = False,
    ):
        self._name = name
        self.sync_services = sync_services
        self.from_manager = from_manager
        self.to_manager = to_manager
        self.create_namespace = create_namespace
        self.create_endpoints = create_endpoints

        self._reverse = {str(to): NamespacedName.parse(key) for key, to in sync_services.items()}

    @property
    def name(self) -> str:
        return self._name

    def __repr__(self) -> str:
        return f"ServiceSyncer(name={self._name!r}, services={len(self.sync_services)})"

    def register(self) -> None:
        self.from_manager.add_controller(Controller(
            name=self._name,
            kind="services",
            reconcile=self.reconcile,
            map_request=self.map_from,
        ))
        # changes to the projected copy re-trigger the source
        self.to_manager.add_controller(Controller(
            name=f"{self._name}-destination",
            kind="services",
            reconcile=self.reconcile,
            map_request=self.map_to,
        ))

    def map_from(self, obj: dict[str, Any]) -> Optional[NamespacedName]:
        identity = NamespacedName.of(obj)
        return identity if str(identity) in self.sync_services else None

    def map_to(self, obj: dict[str, Any]) -> Optional[NamespacedName]:
        return self._reverse.get(str(NamespacedName.of(obj)))

    @property
    def from_client(self) -> IClient:
        return self.from_manager.get_client()

    @property
    def to_client(self) -> IClient:
        return self.to_manager.get_client()

    # ----------------------------------------
    # Reconciliation
    # ----------------------------------------

    async def reconcile(self, ctx: CancellationContext, request: NamespacedName) -> None:
        """Bring the destination of one mapped source service up to date."""
        destination = self.sync_services.get(str(request))
        if destination is None:
            return

        source = await get_or_none(self.from_client, "services", request)
        if source is None:
            await self.reconcile_deleted(destination)
            return

        existing = await get_or_none(self.to_client, "services", destination)
        if existing is not None and not self.is_managed(existing):
            logger.info(f"{self._name}: service {destination} exists and is not managed by us, skipping")
            return

        if self.create_namespace and existing is None:
            await self.ensure_namespace(destination.namespace)

        desired = self.build_service(source, destination)
        if existing is None:
            logger.info(f"{self._name}: create service {destination} from {request}")
            await self.to_client.create("services", desired)
        else:
            updated = self.merge_service(existing, desired)
            if updated != existing:
                logger.info(f"{self._name}: update service {destination}")
                await self.to_client.update("services", updated)

        if self.create_endpoints:
            await self.reconcile_endpoints(source, destination)

    async def reconcile_deleted(self, destination: NamespacedName) -> None:
        existing = await get_or_none(self.to_client, "services", destination)
        if existing is None or not self.is_managed(existing):
            return

        logger.info(f"{self._name}: source removed, delete service {destination}")
        await self._delete("services", destination)
        if self.create_endpoints:
            await self._delete("endpoints", destination)

    async def reconcile_endpoints(self, source: dict[str, Any], destination: NamespacedName) -> None:
        desired = self.build_endpoints(source, destination)
        existing = await get_or_none(self.to_client, "endpoints", destination)
        if existing is None:
            await self.to_client.create("endpoints", desired)
            return
        if not self.is_managed(existing):
            return
        if existing.get("subsets") != desired["subsets"]:
            updated = copy.deepcopy(existing)
            updated["subsets"] = desired["subsets"]
            await self.to_client.update("endpoints", updated)

    async def ensure_namespace(self, namespace: str) -> None:
        try:
            await self.to_client.create("namespaces", {
                "apiVersion": "v1",
                "kind": "Namespace",
                "metadata": {"name": namespace},
            })
            logger.info(f"{self._name}: created namespace {namespace}")
        except ConflictError:
            pass

    async def _delete(self, kind: str, identity: NamespacedName) -> None:
        try:
            await self.to_client.delete(kind, identity.namespace, identity.name)
        except NotFoundError:
            pass

    # ----------------------------------------
    # Object Building
    # ----------------------------------------

    def is_managed(self, obj: dict[str, Any]) -> bool:
        labels = (obj.get("metadata") or {}).get("labels") or {}
        return labels.get(CONTROLLED_BY_LABEL) == self._name

    def build_service(self, source: dict[str, Any], destination: NamespacedName) -> dict[str, Any]:
        source_spec = source.get("spec") or {}
        ports = []
        for port in source_spec.get("ports") or []:
            port = dict(port)
            port.pop("nodePort", None)
            ports.append(port)

        spec: dict[str, Any] = {"type": "ClusterIP", "ports": ports}
        if not self.create_endpoints and source_spec.get("selector"):
            spec["selector"] = dict(source_spec["selector"])

        return {
            "apiVersion": "v1",
            "kind": "Service",
            "metadata": {
                "name": destination.name,
                "namespace": destination.namespace,
                "labels": {CONTROLLED_BY_LABEL: self._name},
            },
            "spec": spec,
        }

    @staticmethod
    def merge_service(existing: dict[str, Any], desired: dict[str, Any]) -> dict[str, Any]:
        updated = copy.deepcopy(existing)
        spec = updated.setdefault("spec", {})
        spec["type"] = desired["spec"]["type"]
        spec["ports"] = desired["spec"]["ports"]
        if "selector" in desired["spec"]:
            spec["selector"] = desired["spec"]["selector"]
        else:
            spec.pop("selector", None)
        return updated

    def build_endpoints(self, source: dict[str, Any], destination: NamespacedName) -> dict[str, Any]:
        source_spec = source.get("spec") or {}
        ports = [
            {
                key: value
                for key, value in (
                    ("name", port.get("name")),
                    ("port", port.get("port")),
                    ("protocol", port.get("protocol", "TCP")),
                )
                if value
            }
            for port in source_spec.get("ports") or []
        ]
        subsets = []
        cluster_ip = source_spec.get("clusterIP")
        if cluster_ip and cluster_ip != "None":
            subsets.append({"addresses": [{"ip": cluster_ip}], "ports": ports})

        return {
            "apiVersion": "v1",
            "kind": "Endpoints",
            "metadata": {
                "name": destination.name,
                "namespace": destination.namespace,
                "labels": {CONTROLLED_BY_LABEL: self._name},
            },
            "subsets": subsets,
        }
