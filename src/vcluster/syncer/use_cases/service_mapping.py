"""Service mapping parser.

Turns "from=to" mapping strings into a table of fully qualified service
identities. Each side is either "name" or "namespace/name":

    parse_mapping(["default/svc1=ns2/svc2"], "", "")      # explicit both sides
    parse_mapping(["svc1=ns2/svc2"], "vcluster-ns", "")   # implicit from side
    parse_mapping(["ns1/svc1=svc2"], "", "vcluster-ns")   # implicit to side

Only one side may rely on a default namespace. A "to" side that spells out
its namespace while a to-default is configured is rejected, because the
caller expects every destination to land in that default namespace.
"""

import logging
from typing import Iterable

from ...api.exceptions import ServiceMappingError
from ..domain.entities import NamespacedName

logger = logging.getLogger(__name__)

FROM_EXPLICIT_FORMAT = "namespace1/service1=service2"
TO_EXPLICIT_FORMAT = "namespace1/service1=namespace2/service2"


def parse_mapping(
    mappings: Iterable[str],
    from_default_namespace: str,
    to_default_namespace: str,
) -> dict[str, NamespacedName]:
    """Parse service mapping strings into a mapping table.

    Args:
        mappings: Entries in "<from>=<to>" form
        from_default_namespace: Namespace for "from" sides given as bare names
        to_default_namespace: Namespace for "to" sides given as bare names;
            when set, "to" sides must not carry a namespace

    Returns:
        Dict of "namespace/name" source keys to destination identities.
        A repeated source key keeps the last entry.

    Raises:
        ServiceMappingError: On the first malformed entry, naming it
    """
    table: dict[str, NamespacedName] = {}

    for mapping in mappings:
        parts = mapping.split("=")
        if len(parts) != 2 or not parts[0] or not parts[1]:
            raise ServiceMappingError(mapping, FROM_EXPLICIT_FORMAT)
        from_side, to_side = parts

        from_segments = from_side.split("/")
        if len(from_segments) == 1:
            if not from_default_namespace:
                raise ServiceMappingError(mapping, FROM_EXPLICIT_FORMAT)
            from_side = f"{from_default_namespace}/{from_side}"
        elif len(from_segments) != 2:
            raise ServiceMappingError(mapping, FROM_EXPLICIT_FORMAT)

        to_segments = to_side.split("/")
        if len(to_segments) == 1:
            if not to_default_namespace:
                raise ServiceMappingError(mapping, TO_EXPLICIT_FORMAT)
            destination = NamespacedName(namespace=to_default_namespace, name=to_side)
        elif len(to_segments) == 2:
            if to_default_namespace:
                raise ServiceMappingError(mapping, FROM_EXPLICIT_FORMAT)
            destination = NamespacedName(namespace=to_segments[0], name=to_segments[1])
        else:
            raise ServiceMappingError(mapping, FROM_EXPLICIT_FORMAT)

        if from_side in table:
            logger.warning(
                f"Service mapping {mapping!r} overrides earlier mapping "
                f"{from_side} -> {table[from_side]}"
            )
        table[from_side] = destination

    return table
