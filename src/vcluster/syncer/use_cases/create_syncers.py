"""Unit registry - declares which sync units exist per resource kind.

The registry is an ordered list of fallback groups. A group lists
alternative controller names (e.g. "nodes" and "fake-nodes") and the
constructors shared by them. The first name of a group that is enabled wins
and every constructor of the group runs once; the remaining names are not
looked at. Groups are always visited in declaration order so bring-up is
deterministic.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence

from ...api.exceptions import ConstructionError
from ..domain.entities import RegisterContext
from ..domain.ports import SyncUnit

logger = logging.getLogger(__name__)

UnitConstructor = Callable[[RegisterContext], SyncUnit]


@dataclass(frozen=True)
class FallbackGroup:
    """Mutually exclusive controller names sharing one constructor list.

    Attributes:
        names: Alternatives in priority order
        constructors: Called in order when one of the names is enabled
    """

    names: tuple[str, ...]
    constructors: tuple[UnitConstructor, ...]

    def __post_init__(self):
        if not self.names:
            raise ValueError("fallback group needs at least one controller name")

    def selected(self, controllers) -> Optional[str]:
        """The first enabled name, None if no alternative is enabled."""
        for name in self.names:
            if controllers.get(name, False):
                return name
        return None


def group(names: str, *constructors: UnitConstructor) -> FallbackGroup:
    """Declare a group from a comma separated name list.

    Example:
        group("nodes,fake-nodes", NodeSyncer.new)
    """
    return FallbackGroup(
        names=tuple(name.strip() for name in names.split(",") if name.strip()),
        constructors=tuple(constructors),
    )


class UnitRegistry:
    """Ordered registry of fallback groups.

    Example:
        registry = UnitRegistry([
            group("services", ServiceSyncer.new),
            group("ingresses", IngressSyncer.new, IngressClassSyncer.new),
        ])
        units = registry.create(register_ctx)
    """

    def __init__(self, groups: Iterable[FallbackGroup] = ()):
        self._groups: list[FallbackGroup] = []
        for fallback_group in groups:
            self.add(fallback_group)

    def add(self, fallback_group: FallbackGroup) -> None:
        """Append a group.

        Raises:
            ValueError: If one of its names is already registered
        """
        known = self.names
        duplicates = [name for name in fallback_group.names if name in known]
        if duplicates:
            raise ValueError(f"controller {duplicates[0]} is already registered")
        self._groups.append(fallback_group)

    @property
    def groups(self) -> Sequence[FallbackGroup]:
        return tuple(self._groups)

    @property
    def names(self) -> list[str]:
        return [name for fallback_group in self._groups for name in fallback_group.names]

    def create(self, ctx: RegisterContext) -> list[SyncUnit]:
        """Construct the units of every enabled group.

        Args:
            ctx: Registration context passed to every constructor

        Returns:
            Constructed units in group order, constructor order within a group

        Raises:
            ConstructionError: If any constructor fails; nothing is returned
        """
        units: list[SyncUnit] = []

        for fallback_group in self._groups:
            controller = fallback_group.selected(ctx.controllers)
            if controller is None:
                continue

            logger.info(f"Start {controller} sync controller")
            for constructor in fallback_group.constructors:
                try:
                    unit = constructor(ctx)
                except Exception as e:
                    raise ConstructionError(controller, cause=e) from e
                units.append(unit)

        return units
