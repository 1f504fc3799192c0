"""Registration of sync units with the managers.

Real syncers are reconciled from both sides: the virtual manager watches the
virtual kind and the physical manager watches the physical kind, mapping
every physical object back to the virtual request it belongs to. Fake
syncers only get a virtual-side controller plus one controller per trigger
kind.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from ...api.exceptions import NotFoundError
from ..domain.cancellation import CancellationContext
from ..domain.entities import NamespacedName, RegisterContext, SyncContext
from ..domain.ports import Controller, FakeSyncer, IClient, ISyncerRegistrar, Syncer

logger = logging.getLogger(__name__)


async def get_or_none(client: IClient, kind: str, identity: NamespacedName) -> Optional[dict[str, Any]]:
    """Fetch an object, None if it does not exist."""
    try:
        return await client.get(kind, identity.namespace, identity.name)
    except NotFoundError:
        return None


def _sync_context(ctx: RegisterContext, context: CancellationContext) -> SyncContext:
    return SyncContext(
        context=context,
        physical_client=ctx.physical_manager.get_client(),
        virtual_client=ctx.virtual_manager.get_client(),
        target_namespace=ctx.target_namespace,
    )


class ManagerSyncerRegistrar(ISyncerRegistrar):
    """Wires units into the virtual and physical managers of a RegisterContext."""

    def register_syncer(self, ctx: RegisterContext, syncer: Syncer) -> None:
        async def reconcile(context: CancellationContext, request: NamespacedName) -> None:
            sync_ctx = _sync_context(ctx, context)
            physical_name = syncer.virtual_to_physical(request)

            virtual_obj = await get_or_none(sync_ctx.virtual_client, syncer.kind, request)
            physical_obj = await get_or_none(sync_ctx.physical_client, syncer.kind, physical_name)

            if virtual_obj is None and physical_obj is None:
                return
            if virtual_obj is None:
                logger.debug(f"{syncer.name}: only physical {physical_name} exists")
                await syncer.sync_up(sync_ctx, physical_obj)
            elif physical_obj is None:
                logger.debug(f"{syncer.name}: sync down {request}")
                await syncer.sync_down(sync_ctx, virtual_obj)
            else:
                await syncer.sync(sync_ctx, physical_obj, virtual_obj)

        ctx.virtual_manager.add_controller(Controller(
            name=syncer.name,
            kind=syncer.kind,
            reconcile=reconcile,
        ))
        ctx.physical_manager.add_controller(Controller(
            name=f"{syncer.name}-physical",
            kind=syncer.kind,
            reconcile=reconcile,
            map_request=syncer.physical_to_virtual,
        ))

    def register_fake_syncer(self, ctx: RegisterContext, syncer: FakeSyncer) -> None:
        async def reconcile(context: CancellationContext, request: NamespacedName) -> None:
            sync_ctx = _sync_context(ctx, context)
            virtual_obj = await get_or_none(sync_ctx.virtual_client, syncer.kind, request)
            if virtual_obj is None:
                await syncer.fake_sync_up(sync_ctx, request)
            else:
                await syncer.fake_sync(sync_ctx, virtual_obj)

        ctx.virtual_manager.add_controller(Controller(
            name=syncer.name,
            kind=syncer.kind,
            reconcile=reconcile,
        ))
        for kind, map_request in syncer.triggers().items():
            ctx.virtual_manager.add_controller(Controller(
                name=f"{syncer.name}-{kind}",
                kind=kind,
                reconcile=reconcile,
                map_request=map_request,
            ))
