"""List Instances Use Case - virtual clusters visible from a kube context.

Also holds the two renderers of the listing: a fixed-width table and an
indented JSON document.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..domain.entities import VirtualClusterInstance
from ..domain.ports import IInstanceFinder

logger = logging.getLogger(__name__)

CONTEXT_PREFIX = "vcluster_"
TABLE_HEADER = ("NAME", "NAMESPACE", "STATUS", "CONNECTED", "CREATED", "AGE")


def instance_context_name(name: str, namespace: str, context: str) -> str:
    """Kube context name created when connecting to an instance."""
    return f"{CONTEXT_PREFIX}{name}_{namespace}_{context}"


class ListInstancesUseCase:
    """Finds virtual cluster instances through an IInstanceFinder.

    Example:
        use_case = ListInstancesUseCase(StatefulSetInstanceFinder(client))
        instances = await use_case.execute("kind-kind", namespace="team-a")
    """

    def __init__(self, finder: IInstanceFinder):
        self.finder = finder

    async def execute(
        self,
        context: str,
        name_prefix: str = "",
        namespace: str = "",
    ) -> list[VirtualClusterInstance]:
        """List instances.

        Args:
            context: Kube context to search through
            name_prefix: Only return instances whose name starts with this
            namespace: Host namespace to search, empty for all namespaces

        Returns:
            Instances sorted by namespace, then name
        """
        instances = await self.finder.find(context, name_prefix=name_prefix, namespace=namespace)
        instances = [i for i in instances if i.name.startswith(name_prefix)]
        logger.debug(f"Found {len(instances)} virtual clusters in context {context}")
        return sorted(instances, key=lambda i: (i.namespace, i.name))


# ============================================
# Rendering
# ============================================


class InstanceDTO(BaseModel):
    """JSON shape of one listed instance."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(alias="Name")
    namespace: str = Field(alias="Namespace")
    created: datetime = Field(alias="Created")
    age_seconds: int = Field(alias="AgeSeconds")
    status: str = Field(alias="Status")

    @classmethod
    def from_instance(
        cls,
        instance: VirtualClusterInstance,
        now: Optional[datetime] = None,
    ) -> "InstanceDTO":
        return cls(
            name=instance.name,
            namespace=instance.namespace,
            created=instance.created,
            age_seconds=int(instance.age(now)),
            status=instance.status,
        )


def format_age(seconds: float) -> str:
    """Render a duration rounded to seconds, e.g. "1h2m3s" or "45s"."""
    total = int(round(seconds))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


def format_table(
    instances: list[VirtualClusterInstance],
    active_context: str,
    now: Optional[datetime] = None,
) -> str:
    """Render instances as an aligned table.

    CONNECTED is "True" for the instance whose context is the active one.
    """
    now = now or datetime.now(timezone.utc)
    rows = [TABLE_HEADER]
    for instance in instances:
        connected = ""
        if active_context == instance_context_name(instance.name, instance.namespace, instance.context):
            connected = "True"
        rows.append((
            instance.name,
            instance.namespace,
            instance.status,
            connected,
            instance.created.isoformat(sep=" "),
            format_age(instance.age(now)),
        ))

    widths = [max(len(row[column]) for row in rows) for column in range(len(TABLE_HEADER))]
    lines = [
        "  ".join(value.ljust(width) for value, width in zip(row, widths)).rstrip()
        for row in rows
    ]
    return "\n".join(lines)


def format_json(
    instances: list[VirtualClusterInstance],
    now: Optional[datetime] = None,
) -> str:
    """Render instances as a 4-space indented JSON array."""
    payload = [
        InstanceDTO.from_instance(instance, now).model_dump(by_alias=True, mode="json")
        for instance in instances
    ]
    return json.dumps(payload, indent=4)


def disconnect_hint(active_context: str) -> Optional[str]:
    """Hint shown while the active context points into a virtual cluster."""
    if active_context.startswith(CONTEXT_PREFIX):
        return "Run `vcluster disconnect` to switch back to the parent context"
    return None
