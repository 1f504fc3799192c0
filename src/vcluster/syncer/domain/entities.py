"""Domain entities for syncer orchestration.

These are plain data structures with no infrastructure dependencies.
They describe what flows between the registry, the lifecycle phases and the
sync units.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Mapping, Optional

from .cancellation import CancellationContext

if TYPE_CHECKING:
    from ...config import SyncerOptions
    from .ports import IClient, IManager


@dataclass(frozen=True, order=True)
class NamespacedName:
    """Fully qualified object identity.

    Cluster scoped objects use an empty namespace.
    """

    namespace: str
    name: str

    @classmethod
    def parse(cls, key: str) -> "NamespacedName":
        """Parse "namespace/name" or "name" (cluster scoped)."""
        namespace, _, name = key.rpartition("/")
        return cls(namespace=namespace, name=name)

    @classmethod
    def of(cls, obj: Mapping[str, Any]) -> "NamespacedName":
        """Identity of a Kubernetes object dictionary."""
        metadata = obj.get("metadata") or {}
        return cls(namespace=metadata.get("namespace", ""), name=metadata.get("name", ""))

    def __str__(self) -> str:
        if not self.namespace:
            return self.name
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class RegisterContext:
    """Immutable snapshot handed to every unit constructor and phase call.

    Units receive it by reference and must not mutate anything reachable from
    it, including the enabled-controller mapping.
    """

    context: CancellationContext
    options: "SyncerOptions"
    controllers: Mapping[str, bool]
    target_namespace: str
    current_namespace: str
    virtual_manager: "IManager"
    physical_manager: "IManager"
    current_namespace_client: Optional["IClient"] = None

    def with_context(self, context: CancellationContext) -> "RegisterContext":
        """Same snapshot bound to a different cancellation context."""
        return replace(self, context=context)

    def is_enabled(self, controller: str) -> bool:
        return bool(self.controllers.get(controller, False))


@dataclass
class ControllerContext:
    """Process-level context the controllers are brought up from.

    Owns the root cancellation context. Managers here are shared by
    reference with every unit.
    """

    context: CancellationContext
    options: "SyncerOptions"
    controllers: Mapping[str, bool]
    current_namespace: str
    local_manager: "IManager"
    virtual_manager: "IManager"
    current_namespace_client: Optional["IClient"] = None

    def to_register_context(self) -> RegisterContext:
        return RegisterContext(
            context=self.context,
            options=self.options,
            controllers=self.controllers,
            target_namespace=self.options.target_namespace,
            current_namespace=self.current_namespace,
            current_namespace_client=self.current_namespace_client,
            virtual_manager=self.virtual_manager,
            physical_manager=self.local_manager,
        )


@dataclass(frozen=True)
class SyncContext:
    """What a sync unit sees while reconciling a single object."""

    context: CancellationContext
    physical_client: "IClient"
    virtual_client: "IClient"
    target_namespace: str


@dataclass
class VirtualClusterInstance:
    """A virtual cluster found on the host cluster.

    Attributes:
        name: Instance name (the host StatefulSet name)
        namespace: Host namespace the instance runs in
        created: Creation timestamp of the instance
        status: Phase reported by the host (e.g. Running, Pending)
        context: Kube context the instance was found through
    """

    name: str
    namespace: str
    created: datetime
    status: str
    context: str = ""

    def age(self, now: Optional[datetime] = None) -> float:
        """Age in seconds."""
        now = now or datetime.now(timezone.utc)
        return max(0.0, (now - self.created).total_seconds())


@dataclass
class BringUpResult:
    """What a successful bring-up registered.

    Contains the unit names per registration path and the service projection
    controllers that were wired.
    """

    syncers: list[str] = field(default_factory=list)
    fake_syncers: list[str] = field(default_factory=list)
    service_syncers: list[Any] = field(default_factory=list)
    side_controllers: list[str] = field(default_factory=list)

    @property
    def total_units(self) -> int:
        return len(self.syncers) + len(self.fake_syncers)
