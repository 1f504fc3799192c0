"""Tests for the always-on side controllers."""

from __future__ import annotations

import copy

import pytest
import yaml

from src.vcluster.api.client import RESTMapper
from src.vcluster.api.exceptions import ConflictError, NotFoundError
from src.vcluster.config import SyncerOptions
from src.vcluster.syncer.adapters.controllers import (
    POD_SECURITY_ENFORCE_LABEL,
    CoreDNSNodeHostsController,
    DefaultControllerFactory,
    DefaultEndpointController,
    InitManifestsController,
    PodSecurityController,
    plural_for,
)
from src.vcluster.syncer.adapters.service_syncer import ServiceSyncer
from src.vcluster.syncer.domain.cancellation import CancellationContext
from src.vcluster.syncer.domain.entities import ControllerContext, NamespacedName
from src.vcluster.syncer.domain.ports import IClient, IManager


class StoreClient(IClient):
    """Mock IClient over a dict, with an optional REST mapper."""

    def __init__(self, rest_mapper=None):
        self.objects: dict[tuple[str, NamespacedName], dict] = {}
        self.writes = []
        if rest_mapper is not None:
            self.rest_mapper = rest_mapper

    def put(self, kind, obj):
        self.objects[(kind, NamespacedName.of(obj))] = copy.deepcopy(obj)

    def stored(self, kind, namespace, name):
        return self.objects.get((kind, NamespacedName(namespace, name)))

    async def get(self, kind, namespace, name):
        try:
            return copy.deepcopy(self.objects[(kind, NamespacedName(namespace, name))])
        except KeyError:
            raise NotFoundError()

    async def list(self, kind, namespace="", label_selector=None):
        return [copy.deepcopy(o) for (k, _), o in self.objects.items() if k == kind]

    async def create(self, kind, obj):
        key = NamespacedName.of(obj)
        if (kind, key) in self.objects:
            raise ConflictError()
        self.writes.append(("create", kind, str(key)))
        self.put(kind, obj)
        return obj

    async def update(self, kind, obj):
        self.writes.append(("update", kind, str(NamespacedName.of(obj))))
        self.put(kind, obj)
        return obj

    async def delete(self, kind, namespace, name):
        self.writes.append(("delete", kind, f"{namespace}/{name}"))
        self.objects.pop((kind, NamespacedName(namespace, name)), None)


class RecordingManager(IManager):
    """Mock manager recording controllers."""

    def __init__(self, client):
        self.client = client
        self.controllers = []

    def get_config(self):
        return None

    def get_scheme(self):
        return frozenset()

    def get_rest_mapper(self):
        return None

    async def start(self, ctx):
        await ctx.wait()

    def get_cache(self):
        raise NotImplementedError

    def get_client(self):
        return self.client

    def add_controller(self, controller):
        self.controllers.append(controller)


CTX = CancellationContext()


class TestDefaultEndpointController:
    """Test mirroring of the syncer service endpoints."""

    @pytest.fixture
    def controller(self):
        host = StoreClient()
        virtual = StoreClient()
        controller = DefaultEndpointController(NamespacedName("vcluster", "vc"), virtual)
        controller.setup_with_manager(RecordingManager(host))
        return controller, host, virtual

    def test_only_own_service_is_mapped(self, controller):
        controller, _, _ = controller

        assert controller.map_request({"metadata": {"namespace": "vcluster", "name": "vc"}}) == NamespacedName("vcluster", "vc")
        assert controller.map_request({"metadata": {"namespace": "vcluster", "name": "other"}}) is None

    @pytest.mark.asyncio
    async def test_writes_default_kubernetes_endpoints(self, controller):
        controller, host, virtual = controller
        host.put("endpoints", {
            "metadata": {"namespace": "vcluster", "name": "vc"},
            "subsets": [{"addresses": [{"ip": "10.0.0.5"}], "ports": [{"name": "web", "port": 8443}]}],
        })

        await controller.reconcile(CTX, NamespacedName("vcluster", "vc"))

        endpoints = virtual.stored("endpoints", "default", "kubernetes")
        assert endpoints["subsets"] == [{
            "addresses": [{"ip": "10.0.0.5"}],
            "ports": [{"name": "https", "port": 8443, "protocol": "TCP"}],
        }]

        await controller.reconcile(CTX, NamespacedName("vcluster", "vc"))
        assert virtual.writes == [("create", "endpoints", "default/kubernetes")]

    @pytest.mark.asyncio
    async def test_missing_host_endpoints(self, controller):
        controller, _, virtual = controller

        await controller.reconcile(CTX, NamespacedName("vcluster", "vc"))

        assert virtual.writes == []


class TestPodSecurityController:
    """Test namespace labelling."""

    @pytest.mark.asyncio
    async def test_labels_namespace_once(self):
        client = StoreClient()
        client.put("namespaces", {"metadata": {"name": "team-a", "labels": {"team": "a"}}})
        controller = PodSecurityController("restricted", client)

        await controller.reconcile(CTX, NamespacedName("", "team-a"))
        await controller.reconcile(CTX, NamespacedName("", "team-a"))

        labels = client.stored("namespaces", "", "team-a")["metadata"]["labels"]
        assert labels == {"team": "a", POD_SECURITY_ENFORCE_LABEL: "restricted"}
        assert len(client.writes) == 1

    def test_watches_namespaces(self):
        manager = RecordingManager(StoreClient())

        PodSecurityController("baseline", manager.client).setup_with_manager(manager)

        assert [(c.name, c.kind) for c in manager.controllers] == [("pod-security", "namespaces")]


class TestCoreDNSNodeHostsController:
    """Test NodeHosts generation."""

    def test_node_hosts(self):
        nodes = [
            {"metadata": {"name": "b"}, "status": {"addresses": [{"type": "InternalIP", "address": "10.0.0.2"}]}},
            {"metadata": {"name": "a"}, "status": {"addresses": [
                {"type": "Hostname", "address": "a"},
                {"type": "InternalIP", "address": "10.0.0.1"},
            ]}},
            {"metadata": {"name": "c"}, "status": {}},
        ]

        assert CoreDNSNodeHostsController.node_hosts(nodes) == "10.0.0.1 a\n10.0.0.2 b"

    @pytest.mark.asyncio
    async def test_updates_config_map(self):
        client = StoreClient()
        client.put("configmaps", {"metadata": {"namespace": "kube-system", "name": "coredns"}, "data": {}})
        client.put("nodes", {"metadata": {"name": "n1"}, "status": {"addresses": [{"type": "InternalIP", "address": "10.1.0.1"}]}})
        manager = RecordingManager(client)
        controller = CoreDNSNodeHostsController(client)
        controller.setup_with_manager(manager)

        request = manager.controllers[0].map_request({"metadata": {"name": "n1"}})
        await controller.reconcile(CTX, request)

        assert client.stored("configmaps", "kube-system", "coredns")["data"]["NodeHosts"] == "10.1.0.1 n1"


class TestInitManifestsController:
    """Test manifest application."""

    @pytest.fixture
    def clients(self):
        local = StoreClient()
        virtual = StoreClient(rest_mapper=RESTMapper())
        controller = InitManifestsController(NamespacedName("vcluster", "vc-init-manifests"), local, virtual)
        return controller, local, virtual

    def set_manifests(self, local, *documents):
        local.put("configmaps", {
            "metadata": {"namespace": "vcluster", "name": "vc-init-manifests"},
            "data": {"manifests": yaml.safe_dump_all(documents)},
        })

    def test_plural_for(self):
        assert plural_for("ConfigMap") == "configmaps"
        assert plural_for("NetworkPolicy") == "networkpolicies"
        assert plural_for("Ingress") == "ingresses"
        assert plural_for("Endpoints") == "endpoints"

    @pytest.mark.asyncio
    async def test_applies_manifests(self, clients):
        controller, local, virtual = clients
        self.set_manifests(
            local,
            {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "apps"}},
            {"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": "settings"}, "data": {"a": "1"}},
            {"apiVersion": "example.com/v1", "kind": "Widget", "metadata": {"name": "w"}},
        )

        await controller.reconcile(CTX, NamespacedName("vcluster", "vc-init-manifests"))

        assert virtual.stored("namespaces", "", "apps") is not None
        assert virtual.stored("configmaps", "default", "settings")["data"] == {"a": "1"}
        assert len(virtual.writes) == 2

    @pytest.mark.asyncio
    async def test_same_manifests_applied_once(self, clients):
        controller, local, virtual = clients
        self.set_manifests(local, {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "apps"}})
        request = NamespacedName("vcluster", "vc-init-manifests")

        await controller.reconcile(CTX, request)
        await controller.reconcile(CTX, request)

        assert len(virtual.writes) == 1

    @pytest.mark.asyncio
    async def test_existing_object_is_updated(self, clients):
        controller, local, virtual = clients
        virtual.put("configmaps", {"metadata": {"namespace": "default", "name": "settings", "resourceVersion": "4"}})
        self.set_manifests(local, {"kind": "ConfigMap", "metadata": {"name": "settings"}, "data": {"a": "2"}})

        await controller.reconcile(CTX, NamespacedName("vcluster", "vc-init-manifests"))

        stored = virtual.stored("configmaps", "default", "settings")
        assert stored["data"] == {"a": "2"}
        assert stored["metadata"]["resourceVersion"] == "4"

    def test_only_own_config_map_is_mapped(self, clients):
        controller, _, _ = clients

        assert controller.map_request({"metadata": {"namespace": "vcluster", "name": "other"}}) is None


class TestDefaultControllerFactory:
    """Test controller construction from the controller context."""

    def test_builds_controllers(self):
        virtual = RecordingManager(StoreClient())
        local = RecordingManager(StoreClient())
        ctx = ControllerContext(
            context=CancellationContext(),
            options=SyncerOptions(name="vc", current_namespace="vcluster", enforce_pod_security_standard="baseline"),
            controllers={},
            current_namespace="vcluster",
            local_manager=local,
            virtual_manager=virtual,
        )
        factory = DefaultControllerFactory()

        endpoint = factory.default_endpoint(ctx)
        assert endpoint.service == NamespacedName("vcluster", "vc")
        assert factory.pod_security(ctx).level == "baseline"
        assert factory.init_manifests(ctx, local.client).config_map == NamespacedName("vcluster", "vc-init-manifests")
        assert factory.coredns(ctx).client is virtual.client

        syncer = factory.service_syncer("map-host-service-syncer", {}, local, virtual, create_endpoints=True)
        assert isinstance(syncer, ServiceSyncer)
        assert syncer.create_endpoints is True
