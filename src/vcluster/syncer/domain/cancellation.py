"""Hierarchical cooperative cancellation.

A CancellationContext is shared by every task that takes part in bring-up.
Cancelling a context cancels all contexts derived from it; cancelling a
child never affects its parent. Cancellation is a signal only: tasks observe
it through ``cancelled`` or ``wait()`` and exit on their own.
"""

import asyncio
from typing import Optional


class CancellationContext:
    """A cancellation signal that can be derived into child contexts.

    Example:
        root = CancellationContext()
        group = root.child()
        group.cancel(error)      # root keeps running
        root.cancel()            # group (and every other child) is cancelled
    """

    def __init__(self, parent: Optional["CancellationContext"] = None):
        self._event = asyncio.Event()
        self._cause: Optional[BaseException] = None
        self._children: list["CancellationContext"] = []
        self.parent = parent

        if parent is not None:
            if parent.cancelled:
                self._cancel(parent.cause)
            else:
                parent._children.append(self)

    @property
    def cancelled(self) -> bool:
        """True once this context or any ancestor has been cancelled."""
        return self._event.is_set()

    @property
    def cause(self) -> Optional[BaseException]:
        """The error passed to the cancel() call that cancelled this context."""
        return self._cause

    def child(self) -> "CancellationContext":
        """Derive a context that is cancelled together with this one."""
        return CancellationContext(parent=self)

    def cancel(self, cause: Optional[BaseException] = None) -> None:
        """Cancel this context and all of its descendants.

        Only the first cancel() records a cause; later calls are no-ops.
        """
        if self.cancelled:
            return
        self._cancel(cause)
        if self.parent is not None and self in self.parent._children:
            self.parent._children.remove(self)

    def _cancel(self, cause: Optional[BaseException]) -> None:
        self._cause = cause
        self._event.set()
        children, self._children = self._children, []
        for child in children:
            child._cancel(cause)

    async def wait(self) -> None:
        """Suspend until this context is cancelled."""
        await self._event.wait()

    def __repr__(self) -> str:
        state = "cancelled" if self.cancelled else "active"
        return f"CancellationContext({state})"
