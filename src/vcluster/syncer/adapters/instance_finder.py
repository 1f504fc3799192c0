"""Virtual cluster discovery on a host cluster.

Every virtual cluster runs as a StatefulSet labeled app=vcluster. Connection
settings for the host come from the user's kubeconfig.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

import yaml

from ...api.client import ClientConfig
from ...api.exceptions import ConfigurationError
from ..domain.entities import VirtualClusterInstance
from ..domain.ports import IClient, IInstanceFinder

logger = logging.getLogger(__name__)

INSTANCE_LABEL_SELECTOR = "app=vcluster"


# ============================================
# Kubeconfig
# ============================================

def default_kubeconfig_path() -> Path:
    """First entry of KUBECONFIG, else ~/.kube/config."""
    env = os.getenv("KUBECONFIG", "")
    if env:
        return Path(env.split(os.pathsep)[0]).expanduser()
    return Path.home() / ".kube" / "config"


def load_kubeconfig(path: Optional[Path] = None) -> dict[str, Any]:
    """Read a kubeconfig file.

    Raises:
        ConfigurationError: If the file is missing or is not valid YAML
    """
    path = path or default_kubeconfig_path()
    try:
        with open(path) as f:
            return yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigurationError(f"cannot read kubeconfig {path}", cause=e)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"invalid kubeconfig {path}", cause=e)


def current_context(kubeconfig: dict[str, Any]) -> str:
    return kubeconfig.get("current-context") or ""


def _named(kubeconfig: dict[str, Any], section: str, name: str) -> dict[str, Any]:
    for entry in kubeconfig.get(section) or []:
        if entry.get("name") == name:
            return entry
    raise ConfigurationError(
        f"kubeconfig has no {section[:-1]} named {name!r}",
        details={"section": section, "name": name},
    )


def client_config_for_context(kubeconfig: dict[str, Any], context: str) -> ClientConfig:
    """Connection settings of a kubeconfig context.

    Only bearer token users are supported.
    """
    entry = _named(kubeconfig, "contexts", context).get("context") or {}
    cluster = _named(kubeconfig, "clusters", entry.get("cluster", "")).get("cluster") or {}
    user = {}
    if entry.get("user"):
        user = _named(kubeconfig, "users", entry["user"]).get("user") or {}

    server = cluster.get("server", "")
    if not server:
        raise ConfigurationError(f"context {context!r} has no server", missing_keys=["server"])

    return ClientConfig(
        host=server.rstrip("/"),
        token=user.get("token", ""),
        ca_file=cluster.get("certificate-authority"),
        verify_ssl=not cluster.get("insecure-skip-tls-verify", False),
    )


# ============================================
# Finder
# ============================================

def _parse_timestamp(value: Optional[str]) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def instance_status(statefulset: dict[str, Any]) -> str:
    """Running once every replica is ready, Pending before that."""
    replicas = (statefulset.get("spec") or {}).get("replicas", 1)
    ready = (statefulset.get("status") or {}).get("readyReplicas", 0)
    if replicas and ready >= replicas:
        return "Running"
    return "Pending"


class StatefulSetInstanceFinder(IInstanceFinder):
    """Finds virtual clusters by their StatefulSets.

    Args:
        client_for_context: Returns the host client of a kube context
    """

    def __init__(self, client_for_context: Callable[[str], IClient]):
        self.client_for_context = client_for_context

    async def find(
        self,
        context: str,
        name_prefix: str = "",
        namespace: str = "",
    ) -> list[VirtualClusterInstance]:
        client = self.client_for_context(context)
        statefulsets = await client.list(
            "statefulsets",
            namespace=namespace,
            label_selector=INSTANCE_LABEL_SELECTOR,
        )

        instances = []
        for statefulset in statefulsets:
            metadata = statefulset.get("metadata") or {}
            name = metadata.get("name", "")
            if not name.startswith(name_prefix):
                continue
            instances.append(VirtualClusterInstance(
                name=name,
                namespace=metadata.get("namespace", ""),
                created=_parse_timestamp(metadata.get("creationTimestamp")),
                status=instance_status(statefulset),
                context=context,
            ))
        return instances
