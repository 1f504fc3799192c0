"""Polling implementation of the manager runtime.

A PollingManager periodically lists every kind its controllers and indices
need, keeps the result in a ManagerCache and hands changed objects to the
controllers' reconcile functions. The first completed pass marks the cache
as synced.

Controllers added after start receive every cached object of their kind on
the next pass, so late registration (service projection, init manifests)
behaves like registration before start.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

from ...api.client import ClientConfig, KubernetesClient, RESTMapper
from ...api.exceptions import APIError
from ..domain.cancellation import CancellationContext
from ..domain.entities import NamespacedName
from ..domain.ports import Controller, ICache, IClient, IManager, IManagerFactory, IndexExtractor

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 5.0


class ManagerCache(ICache):
    """Objects of the last completed list per kind, plus field indices."""

    def __init__(self):
        self._synced = asyncio.Event()
        self._objects: dict[str, dict[NamespacedName, dict[str, Any]]] = {}
        self._indices: dict[tuple[str, str], IndexExtractor] = {}
        self._frozen = False

    @property
    def synced(self) -> bool:
        return self._synced.is_set()

    @property
    def indexed_kinds(self) -> set[str]:
        return {kind for kind, _ in self._indices}

    async def wait_for_cache_sync(self, ctx: CancellationContext) -> bool:
        if self._synced.is_set():
            return True

        synced = asyncio.create_task(self._synced.wait())
        cancelled = asyncio.create_task(ctx.wait())
        try:
            await asyncio.wait({synced, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            synced.cancel()
            cancelled.cancel()
        return self._synced.is_set()

    def index_field(self, kind: str, field: str, extractor: IndexExtractor) -> None:
        if self._frozen:
            raise RuntimeError(f"cannot add index {field} on {kind} after the cache started")
        if (kind, field) in self._indices:
            raise ValueError(f"index {field} on {kind} already exists")
        self._indices[(kind, field)] = extractor

    def by_index(self, kind: str, field: str, value: str) -> list[dict[str, Any]]:
        extractor = self._indices.get((kind, field))
        if extractor is None:
            raise KeyError(f"no index {field} on {kind}")
        return [obj for obj in self._objects.get(kind, {}).values() if value in extractor(obj)]

    def get(self, kind: str, identity: NamespacedName) -> Optional[dict[str, Any]]:
        return self._objects.get(kind, {}).get(identity)

    def objects(self, kind: str) -> dict[NamespacedName, dict[str, Any]]:
        return dict(self._objects.get(kind, {}))

    def replace(self, kind: str, objects: list[dict[str, Any]]) -> dict[NamespacedName, dict[str, Any]]:
        """Store a fresh listing and return the objects that changed.

        Deleted objects are returned with their last known state.
        """
        previous = self._objects.get(kind, {})
        current = {NamespacedName.of(obj): obj for obj in objects}
        self._objects[kind] = current

        changed = {}
        for identity, obj in current.items():
            before = previous.get(identity)
            if before is None or _resource_version(before) != _resource_version(obj):
                changed[identity] = obj
        for identity, obj in previous.items():
            if identity not in current:
                changed[identity] = obj
        return changed

    def freeze(self) -> None:
        self._frozen = True

    def mark_synced(self) -> None:
        self._synced.set()


def _resource_version(obj: dict[str, Any]) -> Optional[str]:
    return (obj.get("metadata") or {}).get("resourceVersion")


class PollingManager(IManager):
    """Manager for one API surface, optionally scoped to one namespace.

    Example:
        manager = PollingManager(client, name="virtual", poll_interval=2)
        manager.add_controller(Controller("services", "services", reconcile))
        await manager.start(ctx)
    """

    def __init__(
        self,
        client: IClient,
        name: str = "manager",
        namespace: str = "",
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        config: Optional[ClientConfig] = None,
        rest_mapper: Optional[RESTMapper] = None,
        owns_client: bool = False,
    ):
        self.name = name
        self.client = client
        self.namespace = namespace
        self.poll_interval = poll_interval
        self.config = config
        self.rest_mapper = rest_mapper or getattr(client, "rest_mapper", None) or RESTMapper()
        self.owns_client = owns_client

        self.cache = ManagerCache()
        self._controllers: list[Controller] = []
        self._pending: list[Controller] = []
        self._started = False

    # ----------------------------------------
    # IManager
    # ----------------------------------------

    def get_config(self) -> Optional[ClientConfig]:
        return self.config

    def get_scheme(self) -> frozenset[str]:
        return self.rest_mapper.kinds

    def get_rest_mapper(self) -> RESTMapper:
        return self.rest_mapper

    def get_cache(self) -> ManagerCache:
        return self.cache

    def get_client(self) -> IClient:
        return self.client

    def add_controller(self, controller: Controller) -> None:
        if controller.kind not in self.get_scheme():
            raise ValueError(f"kind {controller.kind} is not known to manager {self.name}")
        if self._started:
            self._pending.append(controller)
        else:
            self._controllers.append(controller)
        logger.debug(f"Added controller {controller.name} for {controller.kind} to {self.name} manager")

    @property
    def controllers(self) -> list[Controller]:
        return list(self._controllers) + list(self._pending)

    async def close(self) -> None:
        """Close the client if this manager created it."""
        if self.owns_client:
            await self.client.close()
            logger.debug(f"Closed {self.name} manager client")

    async def start(self, ctx: CancellationContext) -> None:
        """Poll until ctx is cancelled.

        Raises:
            APIError: If the initial listing fails or a later pass fails
                with an unrecoverable error
        """
        if self._started:
            raise RuntimeError(f"manager {self.name} already started")
        self._started = True
        self.cache.freeze()
        scope = self.namespace or "all namespaces"
        logger.info(f"Starting {self.name} manager ({scope}, every {self.poll_interval}s)")

        await self.poll_once(ctx)
        self.cache.mark_synced()
        logger.info(f"Manager {self.name} cache synced")

        while not ctx.cancelled:
            try:
                await asyncio.wait_for(ctx.wait(), timeout=self.poll_interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.poll_once(ctx)
            except APIError as e:
                if not e.recoverable:
                    raise
                logger.warning(f"Manager {self.name} poll failed, retrying: {e}")

        logger.info(f"Manager {self.name} stopped")

    # ----------------------------------------
    # Polling
    # ----------------------------------------

    async def poll_once(self, ctx: CancellationContext) -> None:
        """List every watched kind once and reconcile what changed."""
        fresh, self._pending = self._pending, []
        self._controllers.extend(fresh)

        kinds = sorted({c.kind for c in self._controllers} | self.cache.indexed_kinds)
        for kind in kinds:
            if ctx.cancelled:
                return

            objects = await self.client.list(kind, namespace=self.namespace)
            changed = self.cache.replace(kind, objects)

            for controller in self._controllers:
                if controller.kind != kind:
                    continue
                targets = self.cache.objects(kind) if controller in fresh else changed
                # deletions are only visible in the changed set
                if controller in fresh:
                    targets.update(changed)
                await self._dispatch(ctx, controller, targets.values())

    async def _dispatch(self, ctx: CancellationContext, controller: Controller, objects) -> None:
        requests: list[NamespacedName] = []
        for obj in objects:
            if controller.map_request is None:
                request = NamespacedName.of(obj)
            else:
                request = controller.map_request(obj)
            if request is not None and request not in requests:
                requests.append(request)

        for request in requests:
            if ctx.cancelled:
                return
            try:
                await controller.reconcile(ctx, request)
            except Exception as e:
                logger.error(f"Reconcile {controller.name} {request} failed: {e}")


class PollingManagerFactory(IManagerFactory):
    """Creates PollingManagers next to an existing one.

    The new manager builds its own client from the base manager's config and
    owns it: PollingManager.close() closes that client without touching the
    base manager's session.
    """

    def new_manager(
        self,
        base: IManager,
        namespace: str = "",
        client_factory: Optional[Callable[[Any], IClient]] = None,
        name: str = "",
    ) -> IManager:
        config = base.get_config()
        owns_client = True
        if client_factory is not None:
            client = client_factory(config)
        elif config is not None:
            client = KubernetesClient(config, rest_mapper=base.get_rest_mapper())
        else:
            client = base.get_client()
            owns_client = False

        return PollingManager(
            client,
            name=name or f"{base.name}-{namespace or 'all'}",
            namespace=namespace,
            poll_interval=getattr(base, "poll_interval", DEFAULT_POLL_INTERVAL),
            config=config,
            rest_mapper=base.get_rest_mapper(),
            owns_client=owns_client,
        )
