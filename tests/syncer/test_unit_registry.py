"""Tests for the unit registry and its fallback groups."""

from unittest.mock import MagicMock

import pytest

from src.vcluster.api.exceptions import ConstructionError
from src.vcluster.config import SyncerOptions
from src.vcluster.syncer.domain.cancellation import CancellationContext
from src.vcluster.syncer.domain.entities import RegisterContext
from src.vcluster.syncer.domain.ports import SyncUnit
from src.vcluster.syncer.use_cases.create_syncers import FallbackGroup, UnitRegistry, group


class RecordingUnit(SyncUnit):
    """Unit remembering the context it was constructed with."""

    def __init__(self, name: str, ctx: RegisterContext):
        self._name = name
        self.ctx = ctx

    @property
    def name(self) -> str:
        return self._name


def make_constructor(name: str):
    return lambda ctx: RecordingUnit(name, ctx)


def make_context(controllers: dict[str, bool]) -> RegisterContext:
    return RegisterContext(
        context=CancellationContext(),
        options=SyncerOptions(current_namespace="vcluster", target_namespace="target"),
        controllers=controllers,
        target_namespace="target",
        current_namespace="vcluster",
        virtual_manager=MagicMock(),
        physical_manager=MagicMock(),
    )


def node_registry() -> UnitRegistry:
    return UnitRegistry([
        group("nodes,fake-nodes", make_constructor("node-a"), make_constructor("node-b")),
    ])


class TestFallbackGroups:
    """Test first-enabled-name-wins resolution."""

    def test_single_enabled_alternative(self):
        units = node_registry().create(make_context({"fake-nodes": True}))

        assert [u.name for u in units] == ["node-a", "node-b"]

    def test_no_enabled_alternative_yields_nothing(self):
        units = node_registry().create(make_context({"nodes": False, "fake-nodes": False}))

        assert units == []

    def test_multiple_enabled_runs_constructors_once(self):
        units = node_registry().create(make_context({"nodes": True, "fake-nodes": True}))

        assert [u.name for u in units] == ["node-a", "node-b"]

    def test_selected_returns_first_enabled_name(self):
        fallback = group("nodes,fake-nodes")

        assert fallback.selected({"nodes": True, "fake-nodes": True}) == "nodes"
        assert fallback.selected({"fake-nodes": True}) == "fake-nodes"
        assert fallback.selected({}) is None

    def test_group_needs_a_name(self):
        with pytest.raises(ValueError):
            FallbackGroup(names=(), constructors=())

    def test_group_helper_strips_names(self):
        fallback = group(" nodes , fake-nodes ,")

        assert fallback.names == ("nodes", "fake-nodes")


class TestUnitRegistry:
    """Test ordering, duplicates and construction failures."""

    def test_groups_are_visited_in_declaration_order(self):
        registry = UnitRegistry([
            group("services", make_constructor("services")),
            group("configmaps", make_constructor("configmaps")),
            group("ingresses", make_constructor("ingresses"), make_constructor("ingressclasses")),
        ])
        controllers = {"ingresses": True, "configmaps": True, "services": True}

        units = registry.create(make_context(controllers))

        assert [u.name for u in units] == ["services", "configmaps", "ingresses", "ingressclasses"]

    def test_disabled_groups_are_skipped(self):
        registry = UnitRegistry([
            group("services", make_constructor("services")),
            group("configmaps", make_constructor("configmaps")),
        ])

        units = registry.create(make_context({"services": False, "configmaps": True}))

        assert [u.name for u in units] == ["configmaps"]

    def test_duplicate_name_rejected(self):
        registry = UnitRegistry([group("nodes,fake-nodes", make_constructor("nodes"))])

        with pytest.raises(ValueError, match="fake-nodes"):
            registry.add(group("fake-nodes", make_constructor("fake")))

    def test_names(self):
        registry = node_registry()

        assert registry.names == ["nodes", "fake-nodes"]
        assert len(registry.groups) == 1

    def test_constructor_failure_is_wrapped_with_kind(self):
        def broken(ctx):
            raise RuntimeError("no scheme")

        registry = UnitRegistry([
            group("services", make_constructor("services")),
            group("fake-nodes", broken),
            group("secrets", make_constructor("secrets")),
        ])

        with pytest.raises(ConstructionError) as exc_info:
            registry.create(make_context({"services": True, "fake-nodes": True, "secrets": True}))

        error = exc_info.value
        assert error.name == "fake-nodes"
        assert error.details["phase"] == "construct"
        assert str(error) == "register fake-nodes controller: no scheme"
        assert isinstance(error.__cause__, RuntimeError)

    def test_units_share_the_register_context(self):
        controllers = {"services": True, "configmaps": True}
        ctx = make_context(controllers)
        registry = UnitRegistry([
            group("services", make_constructor("services")),
            group("configmaps", make_constructor("configmaps")),
        ])

        units = registry.create(ctx)

        for unit in units:
            assert unit.ctx is ctx
            assert unit.ctx.controllers is controllers
            assert unit.ctx.target_namespace == "target"
            assert unit.ctx.current_namespace == "vcluster"
