"""Tests for hierarchical cancellation."""

import asyncio

import pytest

from src.vcluster.syncer.domain.cancellation import CancellationContext


class TestCancellationContext:
    """Test cancel propagation and causes."""

    @pytest.mark.asyncio
    async def test_cancel_propagates_to_children(self):
        root = CancellationContext()
        child = root.child()
        grandchild = child.child()

        root.cancel()

        assert child.cancelled
        assert grandchild.cancelled

    @pytest.mark.asyncio
    async def test_child_cancel_leaves_parent_running(self):
        root = CancellationContext()
        sibling = root.child()
        child = root.child()

        child.cancel(RuntimeError("boom"))

        assert child.cancelled
        assert not root.cancelled
        assert not sibling.cancelled

    @pytest.mark.asyncio
    async def test_first_cause_wins(self):
        root = CancellationContext()
        first = RuntimeError("first")

        root.cancel(first)
        root.cancel(RuntimeError("second"))

        assert root.cause is first

    @pytest.mark.asyncio
    async def test_children_inherit_cause(self):
        root = CancellationContext()
        child = root.child()
        error = RuntimeError("manager died")

        root.cancel(error)

        assert child.cause is error

    @pytest.mark.asyncio
    async def test_child_of_cancelled_context_starts_cancelled(self):
        root = CancellationContext()
        root.cancel()

        assert root.child().cancelled

    @pytest.mark.asyncio
    async def test_wait_returns_after_cancel(self):
        root = CancellationContext()
        child = root.child()
        asyncio.get_running_loop().call_later(0.01, root.cancel)

        await asyncio.wait_for(child.wait(), timeout=1)

        assert child.cancelled

    @pytest.mark.asyncio
    async def test_cancelled_child_is_released_by_parent(self):
        root = CancellationContext()
        child = root.child()

        child.cancel()

        assert child not in root._children

    def test_repr(self):
        assert repr(CancellationContext()) == "CancellationContext(active)"
