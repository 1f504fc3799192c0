"""Always-on side controllers and the factory that builds them.

Controllers:
    DefaultEndpointController: mirrors the syncer's host endpoints into
        default/kubernetes of the virtual cluster
    PodSecurityController: labels every virtual namespace with the
        enforced pod security standard
    CoreDNSNodeHostsController: keeps the NodeHosts entry of the virtual
        CoreDNS config map in line with the virtual nodes
    InitManifestsController: applies the manifests stored in the
        "<name>-init-manifests" host config map to the virtual cluster
"""

from __future__ import annotations

import copy
import hashlib
import logging
from typing import Any, Optional

import yaml

from ...api.exceptions import ConflictError, NotFoundError
from ..domain.cancellation import CancellationContext
from ..domain.entities import ControllerContext, NamespacedName
from ..domain.ports import (
    Controller,
    IClient,
    IControllerFactory,
    IManager,
    IServiceSyncer,
    ISideController,
)
from .registrar import get_or_none
from .service_syncer import ServiceSyncer

logger = logging.getLogger(__name__)

POD_SECURITY_ENFORCE_LABEL = "pod-security.kubernetes.io/enforce"
COREDNS_CONFIG_MAP = NamespacedName("kube-system", "coredns")
DEFAULT_ENDPOINT = NamespacedName("default", "kubernetes")


class DefaultEndpointController(ISideController):
    """Points the virtual kubernetes service at the syncer's host service."""

    name = "kubernetes-default-endpoint"

    def __init__(self, service: NamespacedName, virtual_client: IClient):
        self.service = service
        self.virtual_client = virtual_client
        self.client: Optional[IClient] = None

    def setup_with_manager(self, manager: IManager) -> None:
        self.client = manager.get_client()
        manager.add_controller(Controller(
            name=self.name,
            kind="endpoints",
            reconcile=self.reconcile,
            map_request=self.map_request,
        ))

    def map_request(self, obj: dict[str, Any]) -> Optional[NamespacedName]:
        identity = NamespacedName.of(obj)
        return identity if identity == self.service else None

    async def reconcile(self, ctx: CancellationContext, request: NamespacedName) -> None:
        host = await get_or_none(self.client, "endpoints", request)
        if host is None:
            logger.debug(f"Host endpoints {request} not found")
            return

        subsets = []
        for subset in host.get("subsets") or []:
            ports = [
                {"name": "https", "port": port.get("port"), "protocol": port.get("protocol", "TCP")}
                for port in subset.get("ports") or []
            ]
            subsets.append({"addresses": subset.get("addresses") or [], "ports": ports})

        existing = await get_or_none(self.virtual_client, "endpoints", DEFAULT_ENDPOINT)
        if existing is None:
            await self.virtual_client.create("endpoints", {
                "apiVersion": "v1",
                "kind": "Endpoints",
                "metadata": {"name": DEFAULT_ENDPOINT.name, "namespace": DEFAULT_ENDPOINT.namespace},
                "subsets": subsets,
            })
        elif existing.get("subsets") != subsets:
            updated = copy.deepcopy(existing)
            updated["subsets"] = subsets
            await self.virtual_client.update("endpoints", updated)
        else:
            return
        logger.info(f"Updated virtual {DEFAULT_ENDPOINT} endpoints from {request}")


class PodSecurityController(ISideController):
    """Enforces a pod security standard on every virtual namespace."""

    name = "pod-security"

    def __init__(self, level: str, client: IClient):
        self.level = level
        self.client = client

    def setup_with_manager(self, manager: IManager) -> None:
        manager.add_controller(Controller(name=self.name, kind="namespaces", reconcile=self.reconcile))

    async def reconcile(self, ctx: CancellationContext, request: NamespacedName) -> None:
        namespace = await get_or_none(self.client, "namespaces", request)
        if namespace is None:
            return

        labels = (namespace.get("metadata") or {}).get("labels") or {}
        if labels.get(POD_SECURITY_ENFORCE_LABEL) == self.level:
            return

        updated = copy.deepcopy(namespace)
        updated.setdefault("metadata", {}).setdefault("labels", {})[POD_SECURITY_ENFORCE_LABEL] = self.level
        logger.info(f"Enforce pod security standard {self.level} on namespace {request.name}")
        await self.client.update("namespaces", updated)


class CoreDNSNodeHostsController(ISideController):
    """Writes "<ip> <node>" lines for every virtual node into CoreDNS's NodeHosts."""

    name = "corednsnodehosts"

    def __init__(self, client: IClient):
        self.client = client

    def setup_with_manager(self, manager: IManager) -> None:
        manager.add_controller(Controller(
            name=self.name,
            kind="nodes",
            reconcile=self.reconcile,
            map_request=lambda obj: COREDNS_CONFIG_MAP,
        ))

    @staticmethod
    def node_hosts(nodes: list[dict[str, Any]]) -> str:
        lines = []
        for node in nodes:
            name = NamespacedName.of(node).name
            for address in (node.get("status") or {}).get("addresses") or []:
                if address.get("type") == "InternalIP":
                    lines.append(f"{address['address']} {name}")
                    break
        return "\n".join(sorted(lines))

    async def reconcile(self, ctx: CancellationContext, request: NamespacedName) -> None:
        config_map = await get_or_none(self.client, "configmaps", request)
        if config_map is None:
            logger.debug(f"CoreDNS config map {request} not found")
            return

        hosts = self.node_hosts(await self.client.list("nodes"))
        data = config_map.get("data") or {}
        if data.get("NodeHosts", "") == hosts:
            return

        updated = copy.deepcopy(config_map)
        updated.setdefault("data", {})["NodeHosts"] = hosts
        logger.info(f"Update CoreDNS NodeHosts ({len(hosts.splitlines())} nodes)")
        await self.client.update("configmaps", updated)


def plural_for(kind: str) -> str:
    """Resource name of a manifest kind, e.g. NetworkPolicy -> networkpolicies."""
    lower = kind.lower()
    if lower.endswith("s"):
        return lower if lower == "endpoints" else f"{lower}es"
    if lower.endswith("y"):
        return f"{lower[:-1]}ies"
    return f"{lower}s"


class InitManifestsController(ISideController):
    """Applies manifests from a host config map to the virtual cluster."""

    name = "init-manifests"

    def __init__(self, config_map: NamespacedName, local_client: IClient, virtual_client: IClient):
        self.config_map = config_map
        self.local_client = local_client
        self.virtual_client = virtual_client
        self._applied: Optional[str] = None

    def setup_with_manager(self, manager: IManager) -> None:
        manager.add_controller(Controller(
            name=self.name,
            kind="configmaps",
            reconcile=self.reconcile,
            map_request=self.map_request,
        ))

    def map_request(self, obj: dict[str, Any]) -> Optional[NamespacedName]:
        identity = NamespacedName.of(obj)
        return identity if identity == self.config_map else None

    async def reconcile(self, ctx: CancellationContext, request: NamespacedName) -> None:
        config_map = await get_or_none(self.local_client, "configmaps", request)
        if config_map is None:
            return

        manifests = (config_map.get("data") or {}).get("manifests", "")
        digest = hashlib.sha256(manifests.encode()).hexdigest()
        if digest == self._applied:
            return

        applied = 0
        for document in yaml.safe_load_all(manifests):
            if ctx.cancelled:
                return
            if not document:
                continue
            await self.apply(document)
            applied += 1

        self._applied = digest
        logger.info(f"Applied {applied} init manifests from {request}")

    async def apply(self, document: dict[str, Any]) -> None:
        kind = plural_for(document.get("kind", ""))
        metadata = document.setdefault("metadata", {})
        rest_mapper = getattr(self.virtual_client, "rest_mapper", None)
        if rest_mapper is not None:
            if kind not in rest_mapper.kinds:
                logger.warning(f"Skipping init manifest of unknown kind {document.get('kind')}")
                return
            if rest_mapper.is_namespaced(kind):
                metadata.setdefault("namespace", "default")

        try:
            await self.virtual_client.create(kind, document)
        except ConflictError:
            identity = NamespacedName.of(document)
            try:
                existing = await self.virtual_client.get(kind, identity.namespace, identity.name)
            except NotFoundError:
                return
            metadata["resourceVersion"] = (existing.get("metadata") or {}).get("resourceVersion")
            await self.virtual_client.update(kind, document)


class DefaultControllerFactory(IControllerFactory):
    """Builds the built-in side controllers and service syncers."""

    def default_endpoint(self, ctx: ControllerContext) -> ISideController:
        return DefaultEndpointController(
            NamespacedName(ctx.current_namespace, ctx.options.name),
            ctx.virtual_manager.get_client(),
        )

    def pod_security(self, ctx: ControllerContext) -> ISideController:
        return PodSecurityController(
            ctx.options.enforce_pod_security_standard,
            ctx.virtual_manager.get_client(),
        )

    def coredns(self, ctx: ControllerContext) -> ISideController:
        return CoreDNSNodeHostsController(ctx.virtual_manager.get_client())

    def init_manifests(self, ctx: ControllerContext, local_client: IClient) -> ISideController:
        return InitManifestsController(
            NamespacedName(ctx.current_namespace, f"{ctx.options.name}-init-manifests"),
            local_client,
            ctx.virtual_manager.get_client(),
        )

    def service_syncer(
        self,
        name: str,
        sync_services: dict[str, NamespacedName],
        from_manager: IManager,
        to_manager: IManager,
        create_namespace: bool = False,
        create_endpoints: bool = False,
    ) -> IServiceSyncer:
        return ServiceSyncer(
            name=name,
            sync_services=sync_services,
            from_manager=from_manager,
            to_manager=to_manager,
            create_namespace=create_namespace,
            create_endpoints=create_endpoints,
        )
