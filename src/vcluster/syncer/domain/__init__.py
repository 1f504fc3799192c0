"""Domain layer - Pure domain entities and port interfaces.

This layer contains:
- Entities: Data structures passed between registry, lifecycle and units
- Ports: Abstract interfaces for the manager runtime and unit capabilities
- Cancellation: The hierarchical cancellation context shared by bring-up

No infrastructure dependencies allowed in this layer.
"""

from .cancellation import CancellationContext
from .entities import (
    BringUpResult,
    ControllerContext,
    NamespacedName,
    RegisterContext,
    SyncContext,
    VirtualClusterInstance,
)
from .ports import (
    Capability,
    Controller,
    FakeSyncer,
    ICache,
    IClient,
    IInstanceFinder,
    IManager,
    IManagerFactory,
    IndicesRegisterer,
    IControllerFactory,
    Initializer,
    IServiceSyncer,
    ISideController,
    ISyncerRegistrar,
    Syncer,
    SyncUnit,
    capabilities,
)

__all__ = [
    # Entities
    "BringUpResult",
    "CancellationContext",
    "ControllerContext",
    "NamespacedName",
    "RegisterContext",
    "SyncContext",
    "VirtualClusterInstance",
    # Runtime Ports
    "Controller",
    "ICache",
    "IClient",
    "IInstanceFinder",
    "IManager",
    "IControllerFactory",
    "IManagerFactory",
    "IServiceSyncer",
    "ISideController",
    "ISyncerRegistrar",
    # Capability Ports
    "Capability",
    "FakeSyncer",
    "IndicesRegisterer",
    "Initializer",
    "Syncer",
    "SyncUnit",
    "capabilities",
]
