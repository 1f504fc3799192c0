"""Use cases layer - Orchestration logic for the syncer.

This layer contains:
- UnitRegistry: Ordered fallback groups of unit constructors
- StartControllersUseCase: The construct/initialize/index/register bring-up
- parse_mapping: The service mapping table parser
- ListInstancesUseCase: Virtual cluster discovery and its renderers

Use cases depend only on ports, not concrete implementations.
"""

from .create_syncers import FallbackGroup, UnitConstructor, UnitRegistry, group
from .list_instances import (
    ListInstancesUseCase,
    disconnect_hint,
    format_json,
    format_table,
    instance_context_name,
)
from .service_mapping import parse_mapping
from .start_controllers import StartControllersUseCase

__all__ = [
    "FallbackGroup",
    "ListInstancesUseCase",
    "StartControllersUseCase",
    "UnitConstructor",
    "UnitRegistry",
    "disconnect_hint",
    "format_json",
    "format_table",
    "group",
    "instance_context_name",
    "parse_mapping",
]
