"""
cairn/reconcile/pipeline.py

ActionPipeline: runs an ActionPlan's actions strictly in order, threading the
RuntimeContext from one to the next. The first failure stops the pipeline and
propagates unchanged; nothing already done is rolled back. The abort signal
is checked before every action.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Dict, Tuple

from cairn.collaborators import (
    GuestCommandRunner,
    ImagePuller,
    PluginHookRunner,
    PluginPhase,
    RootfsMounter,
)
from cairn.models.plan import ActionName, ActionPlan
from cairn.models.runtime import RuntimeContext
from cairn.remote.fanout import AbortSignal
from cairn.runtime.base import LifecycleRuntime

logger = logging.getLogger(__name__)

Handler = Callable[[RuntimeContext, Tuple[str, ...]], Awaitable[RuntimeContext]]


class ActionPipeline:
    def __init__(
        self,
        runtime: LifecycleRuntime,
        images: ImagePuller,
        mounter: RootfsMounter,
        guest: GuestCommandRunner,
        plugins: PluginHookRunner,
        abort: AbortSignal,
    ) -> None:
        self.runtime = runtime
        self.images = images
        self.mounter = mounter
        self.guest = guest
        self.plugins = plugins
        self.abort = abort
        self._handlers: Dict[ActionName, Handler] = {
            ActionName.PULL_IMAGE: self._pull_image,
            ActionName.MOUNT_ROOTFS: self._mount_rootfs,
            ActionName.INIT_MASTER0: self._init_master0,
            ActionName.JOIN_MASTERS: self.runtime.join_masters,
            ActionName.JOIN_NODES: self.runtime.join_nodes,
            ActionName.DELETE_MASTERS: self.runtime.delete_masters,
            ActionName.DELETE_NODES: self.runtime.delete_nodes,
            ActionName.UPGRADE: self.runtime.upgrade,
            ActionName.RUN_GUEST_HOOKS: self._run_guest_hooks,
            ActionName.RESET: self._reset,
            ActionName.UNMOUNT_ROOTFS: self._unmount_rootfs,
        }

    async def execute(self, plan: ActionPlan, ctx: RuntimeContext) -> RuntimeContext:
        """
        Run every action of `plan` in order.

        Raises:
            ReconcileAborted: if the abort signal fires between or during actions.
            Whatever the failing action raised, unchanged.
        """
        total = len(plan.actions)
        for index, action in enumerate(plan.actions, start=1):
            self.abort.raise_if_aborted()
            logger.info("[%d/%d] %s", index, total, action)
            ctx = await self._handlers[action.name](ctx, action.hosts)
        return ctx

    async def _pull_image(
        self, ctx: RuntimeContext, hosts: Tuple[str, ...]
    ) -> RuntimeContext:
        local_rootfs = await self.images.pull_if_not_exist(ctx.cluster.image)
        return ctx.model_copy(update={"local_rootfs": local_rootfs})

    async def _mount_rootfs(
        self, ctx: RuntimeContext, hosts: Tuple[str, ...]
    ) -> RuntimeContext:
        await self.mounter.mount(ctx.cluster, ctx.local_rootfs, hosts)
        return ctx

    async def _init_master0(
        self, ctx: RuntimeContext, hosts: Tuple[str, ...]
    ) -> RuntimeContext:
        await self.plugins.run_phase(PluginPhase.PRE_INIT, ctx)
        ctx = await self.runtime.init(ctx)
        await self.plugins.run_phase(PluginPhase.PRE_INSTALL, ctx)
        return ctx

    async def _run_guest_hooks(
        self, ctx: RuntimeContext, hosts: Tuple[str, ...]
    ) -> RuntimeContext:
        await self.guest.run(ctx)
        await self.plugins.run_phase(PluginPhase.POST_INSTALL, ctx)
        return ctx

    async def _reset(
        self, ctx: RuntimeContext, hosts: Tuple[str, ...]
    ) -> RuntimeContext:
        await self.plugins.run_phase(PluginPhase.PRE_CLEAN, ctx)
        ctx = await self.runtime.reset(ctx)
        await self.plugins.run_phase(PluginPhase.POST_CLEAN, ctx)
        return ctx

    async def _unmount_rootfs(
        self, ctx: RuntimeContext, hosts: Tuple[str, ...]
    ) -> RuntimeContext:
        await self.mounter.unmount(ctx.cluster, hosts)
        return ctx
