"""Syncer module - brings the vcluster sync controllers online.

Architecture:
    domain/     - Entities, cancellation and port interfaces
    use_cases/  - Bring-up orchestration, service mapping, instance listing
    adapters/   - Manager runtime, sync units, side controllers
"""

from .domain.cancellation import CancellationContext
from .domain.entities import (
    BringUpResult,
    ControllerContext,
    NamespacedName,
    RegisterContext,
    SyncContext,
    VirtualClusterInstance,
)
from .domain.ports import (
    FakeSyncer,
    IManager,
    IManagerFactory,
    IndicesRegisterer,
    Initializer,
    Syncer,
    SyncUnit,
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
    # Ports
    "IManager",
    "IManagerFactory",
    # Capabilities
    "FakeSyncer",
    "IndicesRegisterer",
    "Initializer",
    "Syncer",
    "SyncUnit",
]
