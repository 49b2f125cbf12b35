"""
cairn/runtime/k0s/runtime.py

K0sRuntime: the same lifecycle contract driven by the k0s single binary.
Join credentials are k0s tokens, one per role, written to a token file on the
joining host. Workers reach the API directly, so no lvscare is installed.
"""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from cairn.models.runtime import JoinCredentials, RuntimeContext
from cairn.remote.executor import RemoteCommandError
from cairn.remote.ssh import write_remote_file_cmd
from cairn.runtime.base import LifecycleRuntime
from cairn.runtime.k0s import commands as k0s
from cairn.runtime.registry import (
    RegistryConfig,
    add_hosts_entry_cmd,
    ensure_registry,
    load_registry_config,
    recycle_registry,
    remove_hosts_entry_cmd,
    send_registry_cert,
)

logger = logging.getLogger(__name__)


def _last_line(output: str) -> str:
    lines = [line.strip() for line in output.strip().splitlines() if line.strip()]
    if not lines:
        raise ValueError("k0s printed no token")
    return lines[-1]


class K0sRuntime(LifecycleRuntime):
    async def _registry(self, ctx: RuntimeContext) -> RegistryConfig:
        return await load_registry_config(ctx.local_rootfs, ctx.master0, self.settings)

    async def refresh_credentials(self, ctx: RuntimeContext) -> RuntimeContext:
        master0 = ctx.master0
        worker = await self.executor.cmd(master0, k0s.token_create_cmd("worker"))
        controller = await self.executor.cmd(
            master0, k0s.token_create_cmd("controller")
        )
        return ctx.with_credentials(
            JoinCredentials(
                token=_last_line(worker), controller_token=_last_line(controller)
            )
        )

    async def _fetch_admin_artifacts(self, ctx: RuntimeContext) -> None:
        kubeconfig = self.settings.kubeconfig_path(ctx.cluster.name)
        await self.executor.fetch(ctx.master0, k0s.K0S_ADMIN_CONF, kubeconfig)
        logger.info("Fetched admin kubeconfig to %s", kubeconfig)

    async def init(self, ctx: RuntimeContext) -> RuntimeContext:
        master0 = ctx.master0
        if await self.executor.is_file_exist(master0, k0s.K0S_ADMIN_CONF):
            logger.info("[%s] already initialized, regenerating tokens", master0)
        else:
            registry = await self._registry(ctx)
            await ensure_registry(self.executor, ctx, registry)
            await self.executor.cmd_async(
                master0,
                k0s.install_binary_cmd(ctx.rootfs),
                k0s.generate_config_cmd(f"{registry.url}/library"),
                k0s.install_controller_cmd(),
                k0s.START,
            )
            await self._wait_api_ready(ctx)
        ctx = await self.refresh_credentials(ctx)
        await self._fetch_admin_artifacts(ctx)
        return ctx

    async def _wait_api_ready(self, ctx: RuntimeContext) -> None:
        """Token creation needs the API server; wait for it after `k0s start`."""
        attempts = self.settings.upgrade_poll_attempts
        for _ in range(attempts):
            try:
                await self.executor.cmd(ctx.master0, k0s.kubectl("get --raw /readyz"))
                return
            except RemoteCommandError as exc:
                logger.debug("[%s] API not ready: %s", ctx.master0, exc)
            await self.executor.abort.sleep(self.settings.upgrade_poll_interval)
        raise RemoteCommandError(
            ctx.master0, k0s.kubectl("get --raw /readyz"), None, "API never ready"
        )

    async def _join(
        self,
        ctx: RuntimeContext,
        host: str,
        registry: RegistryConfig,
        *,
        controller: bool,
    ) -> None:
        service = k0s.CONTROLLER_SERVICE if controller else k0s.WORKER_SERVICE
        if await self.executor.is_file_exist(host, service):
            logger.info("[%s] already joined, skipping", host)
            return
        if ctx.credentials is None:
            raise ValueError(f"no join credentials for {host}; run init first")
        if controller:
            token_file = k0s.CONTROLLER_TOKEN_FILE
            token = ctx.credentials.controller_token
            install = [
                k0s.generate_config_cmd(f"{registry.url}/library"),
                k0s.install_controller_cmd(token_file),
            ]
        else:
            token_file = k0s.WORKER_TOKEN_FILE
            token = ctx.credentials.token
            install = [k0s.install_worker_cmd(token_file)]

        await self.executor.cmd_async(
            host,
            add_hosts_entry_cmd(registry.hosts_line),
            k0s.install_binary_cmd(ctx.rootfs),
            write_remote_file_cmd(token + "\n", token_file),
            *install,
            k0s.START,
        )

    async def _ensure_credentials(
        self, ctx: RuntimeContext, *, controller: bool
    ) -> RuntimeContext:
        creds = ctx.credentials
        if creds is None or (controller and not creds.controller_token):
            return await self.refresh_credentials(ctx)
        return ctx

    async def join_masters(
        self, ctx: RuntimeContext, hosts: Sequence[str]
    ) -> RuntimeContext:
        hosts = list(hosts)
        if not hosts:
            return ctx
        await self.executor.wait_ready(hosts)
        ctx = await self._ensure_credentials(ctx, controller=True)
        registry = await self._registry(ctx)
        await send_registry_cert(self.executor, ctx, registry, hosts)
        for host in hosts:
            await self._join(ctx, host, registry, controller=True)
        return ctx.add_members(masters=tuple(hosts))

    async def join_nodes(
        self, ctx: RuntimeContext, hosts: Sequence[str]
    ) -> RuntimeContext:
        hosts = list(hosts)
        if not hosts:
            return ctx
        await self.executor.wait_ready(hosts)
        ctx = await self._ensure_credentials(ctx, controller=False)
        registry = await self._registry(ctx)
        await send_registry_cert(self.executor, ctx, registry, hosts)
        await self.executor.run_on_hosts(
            hosts, lambda h: self._join(ctx, h, registry, controller=False)
        )
        return ctx.add_members(nodes=tuple(hosts))

    async def _delete_host(
        self,
        host: str,
        registry: RegistryConfig,
        via: Optional[str],
        *,
        controller: bool,
    ) -> None:
        name = await self.executor.hostname(host)
        await self.executor.cmd_async(
            host,
            k0s.clean_cmd(controller=controller),
            remove_hosts_entry_cmd(registry.domain),
        )
        if via is not None:
            await self.executor.cmd(via, k0s.delete_node_cmd(name))

    async def delete_masters(
        self, ctx: RuntimeContext, hosts: Sequence[str]
    ) -> RuntimeContext:
        hosts = list(hosts)
        registry = await self._registry(ctx)
        remaining = [m for m in ctx.masters if m not in hosts]
        via = await self._membership_master(remaining)
        for host in hosts:
            await self._delete_host(host, registry, via, controller=True)
        return ctx.remove_members(masters=tuple(hosts))

    async def delete_nodes(
        self, ctx: RuntimeContext, hosts: Sequence[str]
    ) -> RuntimeContext:
        hosts = list(hosts)
        registry = await self._registry(ctx)
        via = await self._membership_master(ctx.masters)
        await self.executor.run_on_hosts(
            hosts,
            lambda h: self._delete_host(h, registry, via, controller=False),
        )
        return ctx.remove_members(nodes=tuple(hosts))

    async def reset(self, ctx: RuntimeContext) -> RuntimeContext:
        registry = await self._registry(ctx)
        await self.executor.run_on_hosts(
            list(ctx.nodes),
            lambda h: self._delete_host(h, registry, None, controller=False),
        )
        await self.executor.run_on_hosts(
            list(ctx.masters),
            lambda h: self._delete_host(h, registry, None, controller=True),
        )
        await recycle_registry(self.executor, ctx, registry)
        return ctx.with_membership(masters=(), nodes=())

    async def _upgrade_host(
        self, ctx: RuntimeContext, host: str, *, master: bool, first: bool
    ) -> None:
        name = await self.executor.hostname(host)
        if master:
            await self.executor.cmd_async(ctx.master0, k0s.drain_cmd(name))
        await self.executor.cmd_async(
            host,
            k0s.STOP,
            k0s.install_binary_cmd(ctx.rootfs),
            k0s.START,
        )
        await self._wait_node_ready(ctx, host)
        if master:
            await self.executor.cmd_async(ctx.master0, k0s.uncordon_cmd(name))

    async def _node_ready(self, ctx: RuntimeContext, host: str) -> bool:
        try:
            name = await self.executor.hostname(host)
            out = await self.executor.cmd(ctx.master0, k0s.node_ready_cmd(name))
        except RemoteCommandError as exc:
            logger.debug("[%s] readiness probe failed: %s", host, exc)
            return False
        return out.strip().endswith("True")
