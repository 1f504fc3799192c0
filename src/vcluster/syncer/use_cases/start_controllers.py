"""Start Controllers Use Case - brings the sync units online.

Bring-up runs four phases over the units the registry constructs:

1. Construct - registry constructors, fail-fast
2. Initialize - every Initializer concurrently, fork-join
3. Index - every IndicesRegisterer, sequentially
4. Register - side controllers, service projection, then every unit through
   the fake or real registration path

Any failure aborts bring-up. Errors carry the phase and the unit or
resource-kind name; nothing is retried here. The caller is expected to stop
the process rather than run with a half-initialized sync set.

Extra managers (all-namespace host manager for service projection, current
namespace manager for the default endpoint and init manifests) run as
background tasks and are closed by shutdown(). A failing manager cancels the
root context with a ManagerStartupError, which wait() re-raises.
"""

import asyncio
import logging
from typing import Optional

from ...api.exceptions import (
    CacheSyncError,
    IndexRegistrationError,
    InitializationError,
    ManagerError,
    ManagerStartupError,
    MissingCapabilityError,
    RegistrationError,
    ServiceMappingError,
)
from ..domain.entities import BringUpResult, ControllerContext
from ..domain.ports import (
    Capability,
    IControllerFactory,
    IManager,
    IManagerFactory,
    ISideController,
    ISyncerRegistrar,
    SyncUnit,
    capabilities,
)
from .create_syncers import UnitRegistry
from .service_mapping import parse_mapping

logger = logging.getLogger(__name__)


class StartControllersUseCase:
    """Orchestrates controller bring-up.

    Example:
        use_case = StartControllersUseCase(
            ctx=controller_ctx,
            registry=default_registry(),
            registrar=ManagerSyncerRegistrar(),
            manager_factory=PollingManagerFactory(),
            controller_factory=DefaultControllerFactory(),
        )
        result = await use_case.execute()
        await use_case.run()
    """

    def __init__(
        self,
        ctx: ControllerContext,
        registry: UnitRegistry,
        registrar: ISyncerRegistrar,
        manager_factory: IManagerFactory,
        controller_factory: IControllerFactory,
    ):
        self.ctx = ctx
        self.registry = registry
        self.registrar = registrar
        self.manager_factory = manager_factory
        self.controller_factory = controller_factory

        self.register_ctx = ctx.to_register_context()
        self._background: list[asyncio.Task] = []
        self._fatal_error: Optional[ManagerError] = None
        self._extra_managers: list[IManager] = []
        self._current_namespace_manager: Optional[IManager] = None

    # ----------------------------------------
    # Entry Points
    # ----------------------------------------

    async def execute(self) -> BringUpResult:
        """Run all four phases.

        Returns:
            BringUpResult naming what was registered

        Raises:
            VClusterError: From the first failing phase
        """
        logger.info("Creating sync controllers")
        units = self.create_syncers()
        logger.info(f"Created {len(units)} sync units")

        await self.execute_initializers(units)
        self.register_indices(units)
        result = await self.register_controllers(units)

        logger.info(
            f"Registered {len(result.syncers)} syncers, "
            f"{len(result.fake_syncers)} fake syncers, "
            f"{len(result.service_syncers)} service syncers"
        )
        return result

    async def run(self) -> None:
        """Start the primary managers and block until shutdown.

        Raises:
            ManagerError: If any manager failed while running
        """
        for manager in (self.ctx.local_manager, self.ctx.virtual_manager):
            self._start_manager(manager)
        await self.wait()

    async def wait(self) -> None:
        """Block until the root context is cancelled.

        Raises:
            ManagerError: If a background manager caused the cancellation
        """
        await self.ctx.context.wait()
        await self.shutdown()
        if self._fatal_error is not None:
            raise self._fatal_error

    async def shutdown(self) -> None:
        """Cancel the root context, join every background manager and close
        the managers created during bring-up.

        The primary managers belong to the caller and stay open.
        """
        self.ctx.context.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
            self._background.clear()

        extra, self._extra_managers = self._extra_managers, []
        for manager in extra:
            try:
                await manager.close()
            except Exception as e:
                logger.warning(f"Closing {manager.name} manager failed: {e}")

    @property
    def fatal_error(self) -> Optional[ManagerError]:
        return self._fatal_error

    # ----------------------------------------
    # Phases
    # ----------------------------------------

    def create_syncers(self) -> list[SyncUnit]:
        """Phase 1: construct the units of every enabled registry group."""
        return self.registry.create(self.register_ctx)

    async def execute_initializers(self, units: list[SyncUnit]) -> None:
        """Phase 2: run every initializer concurrently.

        All tasks share one context derived from the root. The first failure
        cancels that context so the others can stop early; the phase still
        waits for every task before it raises.

        Raises:
            InitializationError: The first failure in completion order
        """
        initializers = [unit for unit in units if Capability.INITIALIZER in capabilities(unit)]
        if not initializers:
            return

        group_ctx = self.ctx.context.child()
        register_ctx = self.register_ctx.with_context(group_ctx)
        first_error: Optional[InitializationError] = None

        async def initialize(unit) -> None:
            nonlocal first_error
            try:
                await unit.init(register_ctx)
            except Exception as e:
                if first_error is None:
                    first_error = InitializationError(unit.name, cause=e)
                    group_ctx.cancel(first_error)
                else:
                    logger.debug(f"Initializer of {unit.name} failed after cancellation: {e}")

        logger.info(f"Running {len(initializers)} initializers")
        tasks = [
            asyncio.create_task(initialize(unit), name=f"init-{unit.name}")
            for unit in initializers
        ]
        try:
            await asyncio.gather(*tasks)
        finally:
            group_ctx.cancel()

        if first_error is not None:
            logger.error(f"Initialization failed: {first_error}")
            raise first_error

    def register_indices(self, units: list[SyncUnit]) -> None:
        """Phase 3: register cache indices, in unit order.

        Raises:
            IndexRegistrationError: On the first failure; later units are skipped
        """
        for unit in units:
            if Capability.INDICES_REGISTERER not in capabilities(unit):
                continue
            try:
                unit.register_indices(self.register_ctx)
            except Exception as e:
                raise IndexRegistrationError(unit.name, cause=e) from e

    async def register_controllers(self, units: list[SyncUnit]) -> BringUpResult:
        """Phase 4: wire side controllers, service projection and every unit.

        Raises:
            RegistrationError: If a controller cannot be set up
            MissingCapabilityError: If a unit is neither fake syncer nor syncer
            ServiceMappingError: If a service mapping option is malformed
            ManagerError: If an extra manager fails to start or sync
        """
        result = BringUpResult()
        options = self.ctx.options

        # the syncer service lives in the current namespace, which the local
        # manager only watches when it is also the target namespace
        self._setup(
            self.controller_factory.default_endpoint(self.ctx),
            await self._current_namespace(),
            result,
        )

        if options.enforce_pod_security_standard:
            self._setup(
                self.controller_factory.pod_security(self.ctx),
                self.ctx.virtual_manager,
                result,
            )

        self._setup(
            self.controller_factory.coredns(self.ctx),
            self.ctx.virtual_manager,
            result,
        )

        await self._register_init_manifests(result)
        await self._register_service_syncers(result)

        for unit in units:
            unit_capabilities = capabilities(unit)
            if Capability.FAKE_SYNCER in unit_capabilities:
                register = self.registrar.register_fake_syncer
                registered = result.fake_syncers
            elif Capability.SYNCER in unit_capabilities:
                register = self.registrar.register_syncer
                registered = result.syncers
            else:
                raise MissingCapabilityError(unit.name)

            try:
                register(self.register_ctx, unit)
            except Exception as e:
                raise RegistrationError(f"start {unit.name} syncer", unit.name, cause=e) from e
            registered.append(unit.name)

        return result

    # ----------------------------------------
    # Side Controllers
    # ----------------------------------------

    def _setup(
        self,
        controller: ISideController,
        manager: IManager,
        result: BringUpResult,
    ) -> None:
        try:
            controller.setup_with_manager(manager)
        except Exception as e:
            raise RegistrationError(
                f"unable to setup {controller.name} controller",
                controller.name,
                cause=e,
            ) from e
        result.side_controllers.append(controller.name)

    async def _current_namespace(self) -> IManager:
        """Host manager watching the namespace the syncer runs in.

        The local manager when target and current namespace match, else a
        dedicated manager started on first use and shared afterwards.
        """
        if self.ctx.options.target_namespace == self.ctx.current_namespace:
            return self.ctx.local_manager

        if self._current_namespace_manager is None:
            manager = self._new_manager(namespace=self.ctx.current_namespace, name="current-namespace")
            self._current_namespace_manager = manager
            await self._start_and_wait(manager)
        return self._current_namespace_manager

    async def _register_init_manifests(self, result: BringUpResult) -> None:
        manager = await self._current_namespace()
        controller = self.controller_factory.init_manifests(self.ctx, manager.get_client())
        self._setup(controller, manager, result)

    async def _register_service_syncers(self, result: BringUpResult) -> None:
        options = self.ctx.options

        if options.map_host_services:
            mapping = self._parse_mapping(
                "map_host_services",
                options.map_host_services,
                options.target_namespace,
                "",
            )

            # host services may live in any namespace, the local manager only
            # watches the target namespace
            global_manager = self._new_manager(namespace="", name="global-host")
            await self._start_and_wait(global_manager)

            syncer = self.controller_factory.service_syncer(
                name="map-host-service-syncer",
                sync_services=mapping,
                from_manager=global_manager,
                to_manager=self.ctx.virtual_manager,
                create_namespace=True,
                create_endpoints=True,
            )
            self._register_service_syncer(syncer, "register physical service sync controller")
            result.service_syncers.append(syncer)

        if options.map_virtual_services:
            mapping = self._parse_mapping(
                "map_virtual_services",
                options.map_virtual_services,
                "",
                options.target_namespace,
            )

            syncer = self.controller_factory.service_syncer(
                name="map-virtual-service-syncer",
                sync_services=mapping,
                from_manager=self.ctx.virtual_manager,
                to_manager=self.ctx.local_manager,
            )
            self._register_service_syncer(syncer, "register virtual service sync controller")
            result.service_syncers.append(syncer)

    def _register_service_syncer(self, syncer, message: str) -> None:
        try:
            syncer.register()
        except Exception as e:
            raise RegistrationError(message, syncer.name, cause=e) from e

    @staticmethod
    def _parse_mapping(option: str, mappings, from_namespace: str, to_namespace: str):
        try:
            return parse_mapping(mappings, from_namespace, to_namespace)
        except ServiceMappingError as e:
            raise ServiceMappingError(e.mapping, e.expected, option=option) from e

    # ----------------------------------------
    # Background Managers
    # ----------------------------------------

    def _new_manager(self, namespace: str, name: str) -> IManager:
        manager = self.manager_factory.new_manager(
            self.ctx.local_manager,
            namespace=namespace,
            name=name,
        )
        self._extra_managers.append(manager)
        return manager

    def _start_manager(self, manager: IManager) -> asyncio.Task:
        task = asyncio.create_task(self._run_manager(manager), name=f"manager-{manager.name}")
        self._background.append(task)
        return task

    async def _run_manager(self, manager: IManager) -> None:
        try:
            await manager.start(self.ctx.context)
        except Exception as e:
            error = ManagerStartupError(manager.name, cause=e)
            logger.error(f"Manager {manager.name} failed: {e}", exc_info=True)
            if self._fatal_error is None:
                self._fatal_error = error
            self.ctx.context.cancel(error)

    async def _start_and_wait(self, manager: IManager) -> None:
        """Start a manager in the background and block until its cache synced.

        The wait has no timeout; cancelling the root context ends it.

        Raises:
            ManagerStartupError: If the manager failed before its cache synced
            CacheSyncError: If the root context was cancelled for another reason
        """
        self._start_manager(manager)
        logger.info(f"Waiting for {manager.name} manager cache to sync")

        synced = await manager.get_cache().wait_for_cache_sync(self.ctx.context)
        if not synced:
            cause = self.ctx.context.cause
            if isinstance(cause, ManagerError):
                raise cause
            raise CacheSyncError(manager.name, cause=cause)
