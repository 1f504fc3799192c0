"""Port interfaces for syncer orchestration.

Ports define the contracts between the orchestration use cases and the
infrastructure. These are abstract base classes that adapters must implement.

Two families live here:
- Runtime ports (IClient, ICache, IManager, IManagerFactory, IInstanceFinder)
  describe the watch/cache/reconcile runtime the orchestrator drives.
- Capability ports (SyncUnit, Initializer, IndicesRegisterer, FakeSyncer,
  Syncer) describe what a sync unit can do. A unit subclasses SyncUnit plus
  any subset of the capability classes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from .cancellation import CancellationContext
from .entities import (
    ControllerContext,
    NamespacedName,
    RegisterContext,
    SyncContext,
    VirtualClusterInstance,
)

Reconcile = Callable[[CancellationContext, NamespacedName], Awaitable[None]]
IndexExtractor = Callable[[dict[str, Any]], list[str]]
RequestMapper = Callable[[dict[str, Any]], Optional[NamespacedName]]


# ============================================
# Runtime Ports
# ============================================


class IClient(ABC):
    """Port for reading and writing objects on one API surface.

    Objects are Kubernetes-shaped dictionaries. Cluster scoped kinds use an
    empty namespace.
    """

    @abstractmethod
    async def get(self, kind: str, namespace: str, name: str) -> dict[str, Any]:
        """Fetch one object.

        Raises:
            NotFoundError: If the object does not exist
        """
        ...

    @abstractmethod
    async def list(
        self,
        kind: str,
        namespace: str = "",
        label_selector: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        """List objects of a kind, across all namespaces if namespace is empty."""
        ...

    @abstractmethod
    async def create(self, kind: str, obj: dict[str, Any]) -> dict[str, Any]:
        """Create an object.

        Raises:
            ConflictError: If the object already exists
        """
        ...

    @abstractmethod
    async def update(self, kind: str, obj: dict[str, Any]) -> dict[str, Any]:
        """Replace an existing object."""
        ...

    @abstractmethod
    async def delete(self, kind: str, namespace: str, name: str) -> None:
        """Delete an object.

        Raises:
            NotFoundError: If the object does not exist
        """
        ...

    async def close(self) -> None:
        """Release connections. Clients without any keep the default."""


class ICache(ABC):
    """Port for a manager's informer cache."""

    @abstractmethod
    async def wait_for_cache_sync(self, ctx: CancellationContext) -> bool:
        """Block until the cache completed its initial sync.

        There is no timeout. Returns False only when ctx is cancelled first.
        """
        ...

    @abstractmethod
    def index_field(self, kind: str, field: str, extractor: IndexExtractor) -> None:
        """Register a lookup index. Must be called before the manager starts."""
        ...

    @abstractmethod
    def by_index(self, kind: str, field: str, value: str) -> list[dict[str, Any]]:
        """Look up cached objects through a registered index."""
        ...


@dataclass(frozen=True)
class Controller:
    """A reconcile function bound to one kind on one manager.

    Attributes:
        name: Controller name used in logs
        kind: Kind whose events trigger the controller
        reconcile: Called with the (mapped) request of every changed object
        map_request: Optional translation of the changed object into the
            request to reconcile; returning None drops the event. Without
            it the object's own identity is reconciled.
    """

    name: str
    kind: str
    reconcile: Reconcile
    map_request: Optional[RequestMapper] = None


class IManager(ABC):
    """Port for the watch/cache/reconcile runtime of one API surface.

    Managers are shared by reference across many units. Units only call the
    read/write accessors; they never change manager configuration.
    """

    name: str = "manager"

    @abstractmethod
    def get_config(self) -> Any:
        """Connection configuration of the API surface."""
        ...

    @abstractmethod
    def get_scheme(self) -> Any:
        """Known kinds of the API surface."""
        ...

    @abstractmethod
    def get_rest_mapper(self) -> Any:
        """Kind to REST resource mapping."""
        ...

    @abstractmethod
    async def start(self, ctx: CancellationContext) -> None:
        """Run the reconcile loop. Blocks until ctx is cancelled."""
        ...

    @abstractmethod
    def get_cache(self) -> ICache:
        ...

    @abstractmethod
    def get_client(self) -> IClient:
        ...

    @abstractmethod
    def add_controller(self, controller: Controller) -> None:
        """Attach a controller, before or after the manager started."""
        ...

    async def close(self) -> None:
        """Release what the manager owns. Call after start() returned."""


class IManagerFactory(ABC):
    """Port for creating additional managers next to an existing one."""

    @abstractmethod
    def new_manager(
        self,
        base: IManager,
        namespace: str = "",
        client_factory: Optional[Callable[[Any], IClient]] = None,
        name: str = "",
    ) -> IManager:
        """Create a manager sharing base's config, scheme and REST mapper.

        Args:
            base: Manager to copy connection settings from
            namespace: Namespace scope of the new manager ("" = all namespaces)
            client_factory: Override for how the new manager builds its client
            name: Name used in logs and errors
        """
        ...


class IInstanceFinder(ABC):
    """Port for discovering virtual cluster instances on a host cluster."""

    @abstractmethod
    async def find(
        self,
        context: str,
        name_prefix: str = "",
        namespace: str = "",
    ) -> list[VirtualClusterInstance]:
        ...


class ISideController(ABC):
    """A single purpose controller wired directly by the orchestrator."""

    name: str = "controller"

    @abstractmethod
    def setup_with_manager(self, manager: IManager) -> None:
        ...


# ============================================
# Capability Ports
# ============================================


class SyncUnit(ABC):
    """Base capability every sync unit has: a stable name."""

    @property
    @abstractmethod
    def name(self) -> str:
        ...


class Initializer(ABC):
    """One-time setup run concurrently with other initializers.

    Implementations should check ``ctx.context.cancelled`` between slow
    steps and return early once it is set.
    """

    @abstractmethod
    async def init(self, ctx: RegisterContext) -> None:
        ...


class IndicesRegisterer(ABC):
    """Registers cache indices before any reconciliation runs."""

    @abstractmethod
    def register_indices(self, ctx: RegisterContext) -> None:
        ...


class FakeSyncer(ABC):
    """Synthesizes virtual objects that have no physical counterpart."""

    @property
    @abstractmethod
    def kind(self) -> str:
        ...

    @abstractmethod
    async def fake_sync_up(self, ctx: SyncContext, request: NamespacedName) -> None:
        """Called when the virtual object does not exist (yet)."""
        ...

    @abstractmethod
    async def fake_sync(self, ctx: SyncContext, virtual_obj: dict[str, Any]) -> None:
        """Called when the virtual object exists."""
        ...

    def triggers(self) -> dict[str, RequestMapper]:
        """Other virtual kinds whose objects request a fake object.

        Example: pods request the fake node named by spec.nodeName.
        """
        return {}


class Syncer(ABC):
    """Bidirectional reconciliation between virtual and physical objects."""

    @property
    @abstractmethod
    def kind(self) -> str:
        ...

    @abstractmethod
    def virtual_to_physical(self, request: NamespacedName) -> NamespacedName:
        """Physical identity of a virtual object."""
        ...

    @abstractmethod
    def physical_to_virtual(self, physical_obj: dict[str, Any]) -> Optional[NamespacedName]:
        """Virtual identity of a physical object, None if it is not ours."""
        ...

    @abstractmethod
    async def sync_down(self, ctx: SyncContext, virtual_obj: dict[str, Any]) -> None:
        """Create the physical object for a virtual one."""
        ...

    @abstractmethod
    async def sync(
        self,
        ctx: SyncContext,
        physical_obj: dict[str, Any],
        virtual_obj: dict[str, Any],
    ) -> None:
        """Bring an existing physical/virtual pair back in line."""
        ...

    async def sync_up(self, ctx: SyncContext, physical_obj: dict[str, Any]) -> None:
        """Called when only the physical object exists.

        The virtual object was deleted, so by default the physical one goes
        too. Syncers whose source of truth is the host override this.
        """
        identity = NamespacedName.of(physical_obj)
        await ctx.physical_client.delete(self.kind, identity.namespace, identity.name)


class IServiceSyncer(SyncUnit):
    """Projects mapped services from one API surface to another."""

    sync_services: dict[str, NamespacedName]

    @abstractmethod
    def register(self) -> None:
        """Attach the projection controllers to both managers."""
        ...


# ============================================
# Registration Ports
# ============================================


class ISyncerRegistrar(ABC):
    """Port for the two unit registration paths."""

    @abstractmethod
    def register_syncer(self, ctx: RegisterContext, syncer: Syncer) -> None:
        """Establish bidirectional reconciliation for a real syncer."""
        ...

    @abstractmethod
    def register_fake_syncer(self, ctx: RegisterContext, syncer: FakeSyncer) -> None:
        """Reconcile virtual objects only; no physical watch is set up."""
        ...


class IControllerFactory(ABC):
    """Port for building the always-on controllers wired next to the units."""

    @abstractmethod
    def default_endpoint(self, ctx: ControllerContext) -> ISideController:
        ...

    @abstractmethod
    def pod_security(self, ctx: ControllerContext) -> ISideController:
        ...

    @abstractmethod
    def coredns(self, ctx: ControllerContext) -> ISideController:
        ...

    @abstractmethod
    def init_manifests(self, ctx: ControllerContext, local_client: IClient) -> ISideController:
        ...

    @abstractmethod
    def service_syncer(
        self,
        name: str,
        sync_services: dict[str, NamespacedName],
        from_manager: IManager,
        to_manager: IManager,
        create_namespace: bool = False,
        create_endpoints: bool = False,
    ) -> IServiceSyncer:
        ...


class Capability(Enum):
    """Optional roles a sync unit may implement."""

    INITIALIZER = "initializer"
    INDICES_REGISTERER = "indices_registerer"
    FAKE_SYNCER = "fake_syncer"
    SYNCER = "syncer"


_CAPABILITY_TYPES: dict[Capability, type] = {
    Capability.INITIALIZER: Initializer,
    Capability.INDICES_REGISTERER: IndicesRegisterer,
    Capability.FAKE_SYNCER: FakeSyncer,
    Capability.SYNCER: Syncer,
}


def capabilities(unit: SyncUnit) -> frozenset[Capability]:
    """All capabilities a unit implements."""
    return frozenset(
        capability
        for capability, capability_type in _CAPABILITY_TYPES.items()
        if isinstance(unit, capability_type)
    )
