"""Tests for the polling manager runtime."""

from __future__ import annotations

import asyncio
import copy
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.vcluster.api.client import ClientConfig, KubernetesClient
from src.vcluster.api.exceptions import APIError, NotFoundError, ServerError
from src.vcluster.syncer.adapters.manager import ManagerCache, PollingManager, PollingManagerFactory
from src.vcluster.syncer.domain.cancellation import CancellationContext
from src.vcluster.syncer.domain.entities import NamespacedName
from src.vcluster.syncer.domain.ports import Controller, IClient


class ListingClient(IClient):
    """Mock IClient serving list() from a mutable dict."""

    def __init__(self):
        self.objects: dict[str, list[dict]] = {}
        self.list_calls = []
        self.list_error = None

    async def get(self, kind, namespace, name):
        raise NotFoundError()

    async def list(self, kind, namespace="", label_selector=None):
        self.list_calls.append((kind, namespace))
        if self.list_error:
            raise self.list_error
        return copy.deepcopy(self.objects.get(kind, []))

    async def create(self, kind, obj):
        return obj

    async def update(self, kind, obj):
        return obj

    async def delete(self, kind, namespace, name):
        pass


def obj(namespace, name, version="1", **extra):
    return {"metadata": {"name": name, "namespace": namespace, "resourceVersion": version}, **extra}


class Recorder:
    """Reconcile function collecting requests."""

    def __init__(self, fail_on=None):
        self.requests = []
        self.fail_on = fail_on

    async def __call__(self, ctx, request):
        self.requests.append(request)
        if request == self.fail_on:
            raise RuntimeError("reconcile failed")


class TestManagerCache:
    """Test change detection and indices."""

    def test_replace_reports_changes_and_deletions(self):
        cache = ManagerCache()
        cache.replace("pods", [obj("a", "p1"), obj("a", "p2")])

        changed = cache.replace("pods", [obj("a", "p1", version="2"), obj("a", "p3")])

        assert set(changed) == {
            NamespacedName("a", "p1"),
            NamespacedName("a", "p2"),
            NamespacedName("a", "p3"),
        }
        assert cache.get("pods", NamespacedName("a", "p2")) is None

    def test_unchanged_objects_are_not_reported(self):
        cache = ManagerCache()
        cache.replace("pods", [obj("a", "p1")])

        assert cache.replace("pods", [obj("a", "p1")]) == {}

    def test_index_lookup(self):
        cache = ManagerCache()
        cache.index_field("pods", "spec.nodeName", lambda o: [o.get("spec", {}).get("nodeName", "")])
        cache.replace("pods", [
            obj("a", "p1", spec={"nodeName": "n1"}),
            obj("a", "p2", spec={"nodeName": "n2"}),
        ])

        assert [NamespacedName.of(o).name for o in cache.by_index("pods", "spec.nodeName", "n2")] == ["p2"]

    def test_index_rules(self):
        cache = ManagerCache()
        cache.index_field("pods", "x", lambda o: [])

        with pytest.raises(ValueError):
            cache.index_field("pods", "x", lambda o: [])
        with pytest.raises(KeyError):
            cache.by_index("pods", "y", "v")

        cache.freeze()
        with pytest.raises(RuntimeError):
            cache.index_field("pods", "z", lambda o: [])

    @pytest.mark.asyncio
    async def test_wait_for_cache_sync_aborted_by_cancel(self):
        cache = ManagerCache()
        ctx = CancellationContext()
        asyncio.get_running_loop().call_later(0.01, ctx.cancel)

        assert await cache.wait_for_cache_sync(ctx) is False

    @pytest.mark.asyncio
    async def test_wait_for_cache_sync_after_mark(self):
        cache = ManagerCache()
        asyncio.get_running_loop().call_later(0.01, cache.mark_synced)

        assert await cache.wait_for_cache_sync(CancellationContext()) is True


class TestPollingManager:
    """Test the poll/reconcile loop."""

    @pytest.mark.asyncio
    async def test_first_pass_reconciles_everything(self):
        client = ListingClient()
        client.objects["services"] = [obj("ns", "a"), obj("ns", "b")]
        recorder = Recorder()
        manager = PollingManager(client, name="virtual", namespace="ns")
        manager.add_controller(Controller("services", "services", recorder))

        await manager.poll_once(CancellationContext())

        assert recorder.requests == [NamespacedName("ns", "a"), NamespacedName("ns", "b")]
        assert client.list_calls == [("services", "ns")]

    @pytest.mark.asyncio
    async def test_only_changes_after_first_pass(self):
        client = ListingClient()
        client.objects["services"] = [obj("ns", "a"), obj("ns", "b")]
        recorder = Recorder()
        manager = PollingManager(client)
        manager.add_controller(Controller("services", "services", recorder))
        ctx = CancellationContext()
        await manager.poll_once(ctx)
        recorder.requests.clear()

        client.objects["services"] = [obj("ns", "a", version="2")]
        await manager.poll_once(ctx)

        assert sorted(recorder.requests) == [NamespacedName("ns", "a"), NamespacedName("ns", "b")]

    @pytest.mark.asyncio
    async def test_map_request_filters_and_deduplicates(self):
        client = ListingClient()
        client.objects["pods"] = [
            obj("ns", "p1", spec={"nodeName": "n1"}),
            obj("ns", "p2", spec={"nodeName": "n1"}),
            obj("ns", "p3", spec={}),
        ]
        recorder = Recorder()
        manager = PollingManager(client)

        def to_node(pod):
            name = pod["spec"].get("nodeName")
            return NamespacedName("", name) if name else None

        manager.add_controller(Controller("nodes-from-pods", "pods", recorder, map_request=to_node))
        await manager.poll_once(CancellationContext())

        assert recorder.requests == [NamespacedName("", "n1")]

    @pytest.mark.asyncio
    async def test_reconcile_errors_do_not_stop_the_pass(self):
        client = ListingClient()
        client.objects["services"] = [obj("ns", "a"), obj("ns", "b")]
        recorder = Recorder(fail_on=NamespacedName("ns", "a"))
        manager = PollingManager(client)
        manager.add_controller(Controller("services", "services", recorder))

        await manager.poll_once(CancellationContext())

        assert recorder.requests == [NamespacedName("ns", "a"), NamespacedName("ns", "b")]

    def test_unknown_kind_rejected(self):
        manager = PollingManager(ListingClient())

        with pytest.raises(ValueError):
            manager.add_controller(Controller("x", "gadgets", Recorder()))

    @pytest.mark.asyncio
    async def test_start_syncs_cache_and_handles_late_controllers(self):
        client = ListingClient()
        client.objects["services"] = [obj("ns", "a")]
        early = Recorder()
        late = Recorder()
        manager = PollingManager(client, name="local", poll_interval=0.01)
        manager.add_controller(Controller("early", "services", early))
        ctx = CancellationContext()

        task = asyncio.create_task(manager.start(ctx))
        assert await manager.get_cache().wait_for_cache_sync(ctx)
        assert early.requests == [NamespacedName("ns", "a")]

        manager.add_controller(Controller("late", "services", late))
        await asyncio.sleep(0.05)
        ctx.cancel()
        await asyncio.wait_for(task, timeout=1)

        assert late.requests == [NamespacedName("ns", "a")]
        assert early.requests == [NamespacedName("ns", "a")]
        assert len(manager.controllers) == 2

    @pytest.mark.asyncio
    async def test_initial_list_failure_fails_start(self):
        client = ListingClient()
        client.list_error = APIError("forbidden", status_code=403)
        manager = PollingManager(client)
        manager.add_controller(Controller("services", "services", Recorder()))

        with pytest.raises(APIError):
            await manager.start(CancellationContext())

    @pytest.mark.asyncio
    async def test_recoverable_errors_after_sync_are_retried(self):
        client = ListingClient()
        manager = PollingManager(client, poll_interval=0.01)
        manager.add_controller(Controller("services", "services", Recorder()))
        ctx = CancellationContext()

        task = asyncio.create_task(manager.start(ctx))
        await manager.get_cache().wait_for_cache_sync(ctx)
        client.list_error = ServerError("unavailable", status_code=503)
        await asyncio.sleep(0.05)

        assert not task.done()
        ctx.cancel()
        await asyncio.wait_for(task, timeout=1)

    @pytest.mark.asyncio
    async def test_start_twice_rejected(self):
        manager = PollingManager(ListingClient(), poll_interval=0.01)
        ctx = CancellationContext()
        ctx.cancel()
        await manager.start(ctx)

        with pytest.raises(RuntimeError):
            await manager.start(ctx)


class TestPollingManagerFactory:
    """Test derived managers."""

    def test_client_factory_override(self):
        base = PollingManager(ListingClient(), name="local", poll_interval=2, config=ClientConfig(host="https://h"))
        replacement = ListingClient()
        seen = []

        def client_factory(config):
            seen.append(config)
            return replacement

        manager = PollingManagerFactory().new_manager(base, namespace="", client_factory=client_factory, name="global-host")

        assert manager.name == "global-host"
        assert manager.get_client() is replacement
        assert manager.namespace == ""
        assert manager.poll_interval == 2
        assert manager.get_rest_mapper() is base.get_rest_mapper()
        assert seen == [base.get_config()]

    def test_builds_own_client_from_config(self):
        base = PollingManager(ListingClient(), name="local", config=ClientConfig(host="https://h"))

        manager = PollingManagerFactory().new_manager(base, namespace="vcluster")

        assert isinstance(manager.get_client(), KubernetesClient)
        assert manager.name == "local-vcluster"
        assert manager.namespace == "vcluster"

    def test_derived_manager_owns_its_client(self):
        base = PollingManager(ListingClient(), name="local", config=ClientConfig(host="https://h"))

        built = PollingManagerFactory().new_manager(base, namespace="vcluster")
        overridden = PollingManagerFactory().new_manager(base, client_factory=lambda config: ListingClient())

        assert built.owns_client
        assert overridden.owns_client
        assert not base.owns_client

    @pytest.mark.asyncio
    async def test_close_releases_owned_session(self):
        base = PollingManager(ListingClient(), name="local", config=ClientConfig(host="https://h"))
        manager = PollingManagerFactory().new_manager(base, namespace="", name="global-host")
        session = MagicMock(closed=False)
        session.close = AsyncMock()
        manager.get_client()._session = session

        await manager.close()

        session.close.assert_awaited_once()
        assert manager.get_client()._session is None

    @pytest.mark.asyncio
    async def test_shared_base_client_is_left_open(self):
        client = ListingClient()
        client.close = AsyncMock()
        base = PollingManager(client, name="local")

        manager = PollingManagerFactory().new_manager(base, namespace="vcluster")
        await manager.close()

        assert manager.get_client() is client
        assert not manager.owns_client
        client.close.assert_not_awaited()
