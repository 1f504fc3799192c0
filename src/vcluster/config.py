"""Syncer configuration loaded from environment variables.

Environment Variables:
    VCLUSTER_NAME: Instance name, used as suffix of physical names (default: vcluster)
    POD_NAMESPACE: Namespace the syncer runs in (default: default)
    TARGET_NAMESPACE: Host namespace that receives synced objects (default: POD_NAMESPACE)
    SYNC: Controller toggles, e.g. "nodes,-ingresses" (default: built-in set)
    MAP_HOST_SERVICES: Comma separated host->virtual service mappings
    MAP_VIRTUAL_SERVICES: Comma separated virtual->host service mappings
    ENFORCE_POD_SECURITY_STANDARD: Pod security level to enforce (default: none)
    HOST_API_SERVER / HOST_TOKEN: Host cluster API (default: in-cluster service account)
    VIRTUAL_API_SERVER / VIRTUAL_TOKEN: Virtual cluster API
    KUBE_VERIFY_SSL: Verify API server certificates (default: true)
    SYNC_POLL_SECONDS: Manager poll period in seconds (default: 5)
    LOG_LEVEL: Logging level (default: INFO)
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

from .api.client import SERVICE_ACCOUNT_DIR
from .api.exceptions import ConfigurationError

load_dotenv()


# Every controller name the registry knows about, in registry order.
KNOWN_CONTROLLERS = (
    "services",
    "configmaps",
    "secrets",
    "endpoints",
    "pods",
    "events",
    "persistentvolumeclaims",
    "ingresses",
    "storageclasses",
    "legacy-storageclasses",
    "priorityclasses",
    "nodes",
    "fake-nodes",
    "poddisruptionbudgets",
    "networkpolicies",
    "volumesnapshots",
    "serviceaccounts",
    "persistentvolumes",
    "fake-persistentvolumes",
)

DEFAULT_CONTROLLERS = frozenset({
    "services",
    "configmaps",
    "secrets",
    "endpoints",
    "pods",
    "events",
    "persistentvolumeclaims",
    "ingresses",
    "fake-nodes",
    "fake-persistentvolumes",
})

# Enabling the real controller switches its fake counterpart off.
FAKE_COUNTERPARTS = {
    "nodes": "fake-nodes",
    "persistentvolumes": "fake-persistentvolumes",
}



def split_list(value: Optional[str]) -> list[str]:
    """Split a comma separated environment value, dropping empty items."""
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def parse_enabled_controllers(sync: Optional[str] = None) -> dict[str, bool]:
    """Build the enabled-controller set from a SYNC toggle string.

    Starts from DEFAULT_CONTROLLERS. "name" enables a controller and
    "-name" disables it.

    Raises:
        ConfigurationError: If a toggle names an unknown controller
    """
    enabled = {name: name in DEFAULT_CONTROLLERS for name in KNOWN_CONTROLLERS}

    for toggle in split_list(sync):
        disable = toggle.startswith("-")
        name = toggle.lstrip("-")
        if name not in enabled:
            raise ConfigurationError(
                f"unknown controller {toggle!r} in SYNC, known controllers: "
                f"{', '.join(KNOWN_CONTROLLERS)}",
                details={"toggle": toggle},
            )

        enabled[name] = not disable
        if not disable and name in FAKE_COUNTERPARTS:
            enabled[FAKE_COUNTERPARTS[name]] = False

    return enabled


def _env_bool(key: str, default: str = "true") -> bool:
    return os.getenv(key, default).lower() == "true"


def _in_cluster_namespace() -> str:
    try:
        with open(os.path.join(SERVICE_ACCOUNT_DIR, "namespace")) as f:
            return f.read().strip()
    except OSError:
        return "default"


@dataclass
class SyncerOptions:
    """Options shared by every controller.

    Attributes:
        name: Virtual cluster instance name
        current_namespace: Namespace the syncer itself runs in
        target_namespace: Host namespace where virtual objects are synced to
        sync: Raw controller toggle string (see parse_enabled_controllers)
        map_host_services: Host->virtual service mappings ("from=to")
        map_virtual_services: Virtual->host service mappings ("from=to")
        enforce_pod_security_standard: Pod security level, empty to disable
        host_api_server: Host API URL, empty for in-cluster config
        host_token: Bearer token for the host API
        virtual_api_server: Virtual API URL
        virtual_token: Bearer token for the virtual API
        verify_ssl: Verify API server certificates
        poll_interval: Seconds between manager resyncs
        log_level: Logging level name
    """

    name: str = "vcluster"
    current_namespace: str = "default"
    target_namespace: str = ""
    sync: str = ""
    map_host_services: list[str] = field(default_factory=list)
    map_virtual_services: list[str] = field(default_factory=list)
    enforce_pod_security_standard: str = ""
    host_api_server: str = ""
    host_token: str = ""
    virtual_api_server: str = ""
    virtual_token: str = ""
    verify_ssl: bool = True
    poll_interval: float = 5.0
    log_level: str = "INFO"

    def __post_init__(self):
        if not self.target_namespace:
            self.target_namespace = self.current_namespace

    @classmethod
    def from_env(cls) -> "SyncerOptions":
        """Load options from environment variables (and .env)."""
        current_namespace = os.getenv("POD_NAMESPACE") or _in_cluster_namespace()

        try:
            poll_interval = float(os.getenv("SYNC_POLL_SECONDS", "5"))
        except ValueError as e:
            raise ConfigurationError(
                "SYNC_POLL_SECONDS must be a number",
                details={"value": os.getenv("SYNC_POLL_SECONDS")},
                cause=e,
            )

        return cls(
            name=os.getenv("VCLUSTER_NAME", "vcluster"),
            current_namespace=current_namespace,
            target_namespace=os.getenv("TARGET_NAMESPACE", ""),
            sync=os.getenv("SYNC", ""),
            map_host_services=split_list(os.getenv("MAP_HOST_SERVICES")),
            map_virtual_services=split_list(os.getenv("MAP_VIRTUAL_SERVICES")),
            enforce_pod_security_standard=os.getenv("ENFORCE_POD_SECURITY_STANDARD", ""),
            host_api_server=os.getenv("HOST_API_SERVER", ""),
            host_token=os.getenv("HOST_TOKEN", ""),
            virtual_api_server=os.getenv("VIRTUAL_API_SERVER", ""),
            virtual_token=os.getenv("VIRTUAL_TOKEN", ""),
            verify_ssl=_env_bool("KUBE_VERIFY_SSL"),
            poll_interval=poll_interval,
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    def enabled_controllers(self) -> dict[str, bool]:
        return parse_enabled_controllers(self.sync)

    def __repr__(self):
        return (
            f"SyncerOptions("
            f"name={self.name}, "
            f"current_namespace={self.current_namespace}, "
            f"target_namespace={self.target_namespace}, "
            f"sync={self.sync!r}, "
            f"map_host_services={self.map_host_services}, "
            f"map_virtual_services={self.map_virtual_services})"
        )
