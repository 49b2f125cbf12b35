"""
cairn/runtime/base.py

The lifecycle contract every bootstrap-tool flavor implements. Each operation
takes the current RuntimeContext and returns the next one.

Upgrade ordering is shared by all flavors and lives here:

  1) master0 first; any failure aborts the upgrade immediately,
  2) the remaining masters one at a time,
  3) all nodes concurrently.

Failures in (2) and (3) are recorded while the remaining hosts are still
attempted, then raised together as one HostErrors.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional, Sequence

from cairn.models.runtime import RuntimeContext
from cairn.models.settings import CairnSettings
from cairn.remote.executor import RemoteExecutor
from cairn.remote.fanout import HostErrors, ReconcileAborted

logger = logging.getLogger(__name__)


class NodeNotReadyError(Exception):
    def __init__(self, host: str, attempts: int) -> None:
        super().__init__(f"[{host}] node not Ready after {attempts} check(s)")
        self.host = host


class LifecycleRuntime(ABC):
    """Abstract node lifecycle: init, join, delete, upgrade, reset."""

    def __init__(self, executor: RemoteExecutor, settings: CairnSettings) -> None:
        self.executor = executor
        self.settings = settings

    @abstractmethod
    async def init(self, ctx: RuntimeContext) -> RuntimeContext:
        """Bootstrap the control plane on master0."""

    @abstractmethod
    async def join_masters(
        self, ctx: RuntimeContext, hosts: Sequence[str]
    ) -> RuntimeContext:
        pass

    @abstractmethod
    async def join_nodes(
        self, ctx: RuntimeContext, hosts: Sequence[str]
    ) -> RuntimeContext:
        pass

    @abstractmethod
    async def delete_masters(
        self, ctx: RuntimeContext, hosts: Sequence[str]
    ) -> RuntimeContext:
        pass

    @abstractmethod
    async def delete_nodes(
        self, ctx: RuntimeContext, hosts: Sequence[str]
    ) -> RuntimeContext:
        pass

    @abstractmethod
    async def reset(self, ctx: RuntimeContext) -> RuntimeContext:
        """Tear down nodes, then masters, then the private registry."""

    @abstractmethod
    async def _upgrade_host(
        self, ctx: RuntimeContext, host: str, *, master: bool, first: bool
    ) -> None:
        """Upgrade one host in place; `first` is True only for master0."""

    @abstractmethod
    async def _node_ready(self, ctx: RuntimeContext, host: str) -> bool:
        pass

    async def upgrade(
        self, ctx: RuntimeContext, hosts: Optional[Sequence[str]] = None
    ) -> RuntimeContext:
        """
        Upgrade `hosts` (default: every live member) to the image version.

        Raises:
            Whatever master0's upgrade raised, unchanged.
            HostErrors: if any other host failed.
        """
        targets = set(hosts) if hosts is not None else None
        masters = [m for m in ctx.masters if targets is None or m in targets]
        nodes = [n for n in ctx.nodes if targets is None or n in targets]
        logger.info("Upgrading cluster %s to %s", ctx.cluster.name, ctx.version)

        if ctx.master0 in masters:
            await self._upgrade_host(ctx, ctx.master0, master=True, first=True)
            masters.remove(ctx.master0)

        failures: Dict[str, BaseException] = {}
        for master in masters:
            try:
                await self._upgrade_host(ctx, master, master=True, first=False)
            except ReconcileAborted:
                raise
            except Exception as exc:
                logger.error("[%s] upgrade failed: %s", master, exc)
                failures[master] = exc

        outcome = await self.executor.collect_on_hosts(
            nodes,
            lambda h: self._upgrade_host(ctx, h, master=False, first=False),
        )
        for host, exc in outcome.errors.items():
            if isinstance(exc, ReconcileAborted):
                raise exc
            logger.error("[%s] upgrade failed: %s", host, exc)
        failures.update(outcome.errors)

        if failures:
            raise HostErrors(failures)
        return ctx

    async def _membership_master(self, masters: Sequence[str]) -> Optional[str]:
        """
        The first remaining master that answers, used to remove deleted hosts
        from cluster membership. None (with a warning) when none is reachable.
        """
        via = await self.executor.first_reachable(masters)
        if via is None and masters:
            logger.warning(
                "No remaining master is reachable (%s); deleted hosts stay "
                "registered in the cluster",
                ", ".join(masters),
            )
        return via

    async def _wait_node_ready(self, ctx: RuntimeContext, host: str) -> None:
        """Poll with a fixed sleep until `host` reports Ready."""
        attempts = self.settings.upgrade_poll_attempts
        for attempt in range(attempts):
            if await self._node_ready(ctx, host):
                return
            logger.info(
                "[%s] waiting for node Ready (%d/%d)", host, attempt + 1, attempts
            )
            if attempt < attempts - 1:
                await self.executor.abort.sleep(self.settings.upgrade_poll_interval)
        raise NodeNotReadyError(host, attempts)
