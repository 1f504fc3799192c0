"""Adapters layer - Infrastructure implementations for syncer orchestration.

This layer contains concrete implementations of the ports defined in the domain layer:
- PollingManager / PollingManagerFactory: IManager over the Kubernetes REST client
- ManagerSyncerRegistrar: ISyncerRegistrar wiring units into managers
- ResourceSyncer and friends: the built-in sync units and default_registry()
- ServiceSyncer: IServiceSyncer projecting mapped services
- DefaultControllerFactory: IControllerFactory for the side controllers
- StatefulSetInstanceFinder: IInstanceFinder for listing virtual clusters
"""

from .controllers import (
    CoreDNSNodeHostsController,
    DefaultControllerFactory,
    DefaultEndpointController,
    InitManifestsController,
    PodSecurityController,
)
from .instance_finder import (
    StatefulSetInstanceFinder,
    client_config_for_context,
    current_context,
    load_kubeconfig,
)
from .manager import ManagerCache, PollingManager, PollingManagerFactory
from .registrar import ManagerSyncerRegistrar
from .resources import (
    CRDResourceSyncer,
    FakeNodeSyncer,
    FakePersistentVolumeSyncer,
    HostResourceSyncer,
    ResourceSyncer,
    ServiceResourceSyncer,
    default_registry,
)
from .service_syncer import ServiceSyncer

__all__ = [
    # Runtime
    "ManagerCache",
    "PollingManager",
    "PollingManagerFactory",
    "ManagerSyncerRegistrar",
    # Units
    "CRDResourceSyncer",
    "FakeNodeSyncer",
    "FakePersistentVolumeSyncer",
    "HostResourceSyncer",
    "ResourceSyncer",
    "ServiceResourceSyncer",
    "default_registry",
    # Controllers
    "CoreDNSNodeHostsController",
    "DefaultControllerFactory",
    "DefaultEndpointController",
    "InitManifestsController",
    "PodSecurityController",
    "ServiceSyncer",
    # Listing
    "StatefulSetInstanceFinder",
    "client_config_for_context",
    "current_context",
    "load_kubeconfig",
]
