"""Kubernetes API access for the vcluster syncer.

This package provides:
- KubernetesClient: async REST client implementing the IClient port
- RESTMapper: kind to REST path resolution
- Exception hierarchy shared by every layer
"""

from .client import (
    DEFAULT_RESOURCES,
    ClientConfig,
    KubernetesClient,
    ResourcePath,
    RESTMapper,
)
from .exceptions import (
    APIError,
    CacheSyncError,
    ConfigurationError,
    ConflictError,
    ConstructionError,
    IndexRegistrationError,
    InitializationError,
    ManagerError,
    ManagerStartupError,
    MissingCapabilityError,
    NetworkError,
    NotFoundError,
    RegistrationError,
    ServerError,
    ServiceMappingError,
    SyncerLifecycleError,
    VClusterError,
)

__all__ = [
    # Client
    "ClientConfig",
    "KubernetesClient",
    "ResourcePath",
    "RESTMapper",
    "DEFAULT_RESOURCES",
    # Exceptions
    "VClusterError",
    "ConfigurationError",
    "ServiceMappingError",
    "MissingCapabilityError",
    "SyncerLifecycleError",
    "ConstructionError",
    "InitializationError",
    "IndexRegistrationError",
    "RegistrationError",
    "ManagerError",
    "ManagerStartupError",
    "CacheSyncError",
    "APIError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "NetworkError",
]
