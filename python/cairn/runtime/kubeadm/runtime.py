"""
cairn/runtime/kubeadm/runtime.py

KubeadmRuntime: node lifecycle driven by kubeadm.

init:
  render the init config -> generate PKI and kubeconfigs locally -> push them
  with the static files to master0 -> start the registry -> `kubeadm init` ->
  scrape join credentials -> fetch the admin kubeconfig and kubectl back.

join_masters joins one master at a time through master0; join_nodes joins
workers concurrently through the VIP, fronted by lvscare on each node.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
from typing import List, Optional, Sequence

import aiofiles

from cairn.models.runtime import RuntimeContext
from cairn.remote.executor import RemoteCommandError
from cairn.remote.ssh import write_remote_file_cmd
from cairn.runtime.base import LifecycleRuntime
from cairn.runtime.kubeadm import commands as kc
from cairn.runtime.kubeadm.output import parse_certificate_key, parse_join_output
from cairn.runtime.kubeadm.pki import (
    SHARED_CA_FILES,
    generate_cluster_pki,
    write_kubeconfigs,
)
from cairn.runtime.kubeadm.templates import (
    cluster_settings_from_config,
    render_init_config,
    render_join_config,
)
from cairn.runtime.lvscare import ipvs_rule_cmd, write_lvscare_cmd
from cairn.runtime.metadata import load_image_metadata
from cairn.runtime.registry import (
    RegistryConfig,
    add_hosts_entry_cmd,
    ensure_registry,
    load_registry_config,
    recycle_registry,
    remove_hosts_entry_cmd,
    send_registry_cert,
)
from cairn.runtime.version import with_v_prefix

logger = logging.getLogger(__name__)

# Kubeconfigs every master shares; kubelet.conf is per node and made by kubeadm.
SHARED_KUBECONFIGS = (kc.ADMIN_CONF, kc.CONTROLLER_CONF, kc.SCHEDULER_CONF)


class KubeadmRuntime(LifecycleRuntime):
    @property
    def _verbosity(self) -> int:
        return self.settings.kubeadm_verbosity

    def _kubeconfig_dir(self, ctx: RuntimeContext) -> str:
        return os.path.join(ctx.base_path, "kubernetes")

    def _apiserver_url(self, ctx: RuntimeContext) -> str:
        return f"https://{ctx.apiserver_domain}:{ctx.apiserver_port}"

    async def _registry(self, ctx: RuntimeContext) -> RegistryConfig:
        return await load_registry_config(ctx.local_rootfs, ctx.master0, self.settings)

    async def _ensure_metadata(self, ctx: RuntimeContext) -> RuntimeContext:
        if ctx.metadata is not None:
            return ctx
        metadata = await load_image_metadata(ctx.local_rootfs)
        if metadata is None:
            raise ValueError(f"image rootfs {ctx.local_rootfs} has no Metadata file")
        return ctx.model_copy(update={"metadata": metadata})

    # ------------------------------------------------------------------
    # Init
    # ------------------------------------------------------------------

    async def _render_init_config(
        self, ctx: RuntimeContext, registry: RegistryConfig
    ) -> RuntimeContext:
        template_text: Optional[str] = None
        if ctx.cluster.kubeadm_config_file:
            async with aiofiles.open(
                ctx.cluster.kubeadm_config_file, "r", encoding="utf-8"
            ) as f:
                template_text = await f.read()
            logger.info("Using kubeadm template %s", ctx.cluster.kubeadm_config_file)

        rendered = render_init_config(
            ctx, f"{registry.url}/library", template_text=template_text
        )
        await self.executor.cmd(
            ctx.master0,
            write_remote_file_cmd(rendered, f"{ctx.rootfs}/{kc.INIT_CONFIG_FILE}"),
        )

        sans: List[str] = [
            "127.0.0.1",
            ctx.apiserver_domain,
            ctx.vip,
            *ctx.masters,
            *ctx.cert_sans,
        ]
        dns_domain = ctx.dns_domain
        parsed = cluster_settings_from_config(rendered)
        if parsed is not None:
            dns_domain, config_sans = parsed
            sans += config_sans
        return ctx.model_copy(
            update={"dns_domain": dns_domain, "cert_sans": tuple(dict.fromkeys(sans))}
        )

    async def _generate_certs(self, ctx: RuntimeContext, node_name: str) -> None:
        await asyncio.to_thread(
            generate_cluster_pki,
            ctx.cert_path,
            list(ctx.cert_sans),
            node_name=node_name,
            node_ip=ctx.master0,
            svc_cidr=ctx.cluster.network.svc_cidr,
            dns_domain=ctx.dns_domain,
        )
        await asyncio.to_thread(
            write_kubeconfigs,
            self._kubeconfig_dir(ctx),
            ctx.cert_path,
            node_name=node_name,
            server=self._apiserver_url(ctx),
        )

    async def _send_static_files(self, ctx: RuntimeContext, host: str) -> None:
        static_dir = f"{ctx.rootfs}/statics"
        for name, destination in kc.MASTER_STATIC_FILES:
            if not os.path.isfile(os.path.join(ctx.local_rootfs, "statics", name)):
                logger.debug("Image ships no static file %s", name)
                continue
            await self.executor.cmd(
                host, kc.copy_static_file_cmd(static_dir, name, destination)
            )

    async def _send_kubeconfigs(
        self, ctx: RuntimeContext, host: str, names: Sequence[str]
    ) -> None:
        for name in names:
            local = os.path.join(self._kubeconfig_dir(ctx), name)
            if not os.path.isfile(local):
                logger.debug("No local %s to push to %s", name, host)
                continue
            await self.executor.copy(host, local, f"{kc.KUBERNETES_DIR}/{name}")

    async def _fetch_admin_artifacts(self, ctx: RuntimeContext) -> None:
        name = ctx.cluster.name
        kubeconfig = self.settings.kubeconfig_path(name)
        await self.executor.fetch(ctx.master0, kc.REMOTE_ADMIN_CONF, kubeconfig)
        async with aiofiles.open(kubeconfig, "r", encoding="utf-8") as f:
            content = await f.read()
        content = content.replace(
            self._apiserver_url(ctx), f"https://{ctx.master0}:{ctx.apiserver_port}"
        )
        async with aiofiles.open(kubeconfig, "w", encoding="utf-8") as f:
            await f.write(content)

        kubectl = self.settings.kubectl_path(name)
        await self.executor.fetch(ctx.master0, kc.REMOTE_KUBECTL, kubectl)
        os.chmod(kubectl, 0o755)
        logger.info("Fetched admin kubeconfig to %s", kubeconfig)

    async def refresh_credentials(self, ctx: RuntimeContext) -> RuntimeContext:
        """Issue a fresh certificate key and bootstrap token on master0."""
        master0 = ctx.master0
        out = await self.executor.cmd(master0, kc.upload_certs_cmd(self._verbosity))
        cert_key = parse_certificate_key(out)
        out = await self.executor.cmd(master0, kc.token_create_cmd(self._verbosity))
        credentials = parse_join_output(out)
        return ctx.with_credentials(
            credentials.model_copy(update={"certificate_key": cert_key})
        )

    async def init(self, ctx: RuntimeContext) -> RuntimeContext:
        ctx = await self._ensure_metadata(ctx)
        master0 = ctx.master0
        registry = await self._registry(ctx)
        ctx = await self._render_init_config(ctx, registry)

        if await self.executor.is_file_exist(master0, kc.REMOTE_ADMIN_CONF):
            logger.info("[%s] already initialized, regenerating credentials", master0)
            ctx = await self.refresh_credentials(ctx)
            await self._fetch_admin_artifacts(ctx)
            return ctx

        node_name = await self.executor.hostname(master0)
        await self._generate_certs(ctx, node_name)
        await self.executor.copy(master0, ctx.cert_path, kc.PKI_DIR)
        await self._send_kubeconfigs(
            ctx, master0, SHARED_KUBECONFIGS + (kc.KUBELET_CONF,)
        )
        await self._send_static_files(ctx, master0)

        await self.executor.cmd_async(
            master0,
            add_hosts_entry_cmd(f"{master0} {ctx.apiserver_domain}"),
        )
        await ensure_registry(self.executor, ctx, registry)

        version = with_v_prefix(ctx.version)
        logger.info("[%s] kubeadm init (%s)", master0, version)
        out = await self.executor.cmd(
            master0, kc.init_cmd(ctx.rootfs, version, self._verbosity)
        )
        ctx = ctx.with_credentials(parse_join_output(out))
        await self.executor.cmd(master0, kc.COPY_KUBECONFIG)
        await self._fetch_admin_artifacts(ctx)
        return ctx

    # ------------------------------------------------------------------
    # Join
    # ------------------------------------------------------------------

    async def _verify_registered(self, ctx: RuntimeContext, host: str) -> None:
        name = await self.executor.hostname(host)
        await self.executor.cmd(ctx.master0, f"kubectl get node {shlex.quote(name)}")
        logger.info("[%s] registered as node %s", host, name)

    async def _already_joined(self, host: str) -> bool:
        if await self.executor.is_file_exist(host, kc.REMOTE_KUBELET_CONF):
            logger.info("[%s] already joined, skipping", host)
            return True
        return False

    async def _send_join_master_material(self, ctx: RuntimeContext, host: str) -> None:
        for rel in SHARED_CA_FILES:
            local = os.path.join(ctx.cert_path, *rel.split("/"))
            if os.path.isfile(local):
                await self.executor.copy(host, local, f"{kc.PKI_DIR}/{rel}")
        await self._send_kubeconfigs(ctx, host, SHARED_KUBECONFIGS)
        await self._send_static_files(ctx, host)

    async def _join_master(
        self, ctx: RuntimeContext, host: str, registry: RegistryConfig
    ) -> None:
        if await self._already_joined(host):
            return
        version = with_v_prefix(ctx.version)
        config = render_join_config(ctx, master=host)
        await self.executor.cmd_async(
            host,
            add_hosts_entry_cmd(registry.hosts_line),
            write_remote_file_cmd(config, f"{ctx.rootfs}/{kc.JOIN_CONFIG_FILE}"),
            add_hosts_entry_cmd(f"{ctx.master0} {ctx.apiserver_domain}"),
            kc.join_cmd(ctx.rootfs, self._verbosity),
            kc.retarget_hosts_entry_cmd(ctx.master0, host, ctx.apiserver_domain),
            kc.COPY_KUBECONFIG,
            (
                kc.replace_local_endpoint_cmd(host)
                if version in kc.LOCAL_ENDPOINT_VERSIONS
                else ""
            ),
        )
        await self._verify_registered(ctx, host)

    async def join_masters(
        self, ctx: RuntimeContext, hosts: Sequence[str]
    ) -> RuntimeContext:
        hosts = list(hosts)
        if not hosts:
            return ctx
        ctx = await self._ensure_metadata(ctx)
        await self.executor.wait_ready(hosts)
        if ctx.credentials is None or not ctx.credentials.certificate_key:
            ctx = await self.refresh_credentials(ctx)

        registry = await self._registry(ctx)
        await send_registry_cert(self.executor, ctx, registry, hosts)
        await self.executor.run_on_hosts(
            hosts, lambda h: self._send_join_master_material(ctx, h)
        )
        # etcd membership changes one at a time
        for host in hosts:
            await self._join_master(ctx, host, registry)
        return ctx.add_members(masters=tuple(hosts))

    async def _join_node(
        self, ctx: RuntimeContext, host: str, registry: RegistryConfig
    ) -> None:
        if await self._already_joined(host):
            return
        config = render_join_config(ctx)
        await self.executor.cmd_async(
            host,
            add_hosts_entry_cmd(registry.hosts_line),
            write_remote_file_cmd(config, f"{ctx.rootfs}/{kc.JOIN_CONFIG_FILE}"),
            add_hosts_entry_cmd(f"{ctx.vip} {ctx.apiserver_domain}"),
            ipvs_rule_cmd(ctx.vip, ctx.masters, ctx.apiserver_port),
            kc.join_cmd(ctx.rootfs, self._verbosity),
            f"mkdir -p {kc.KUBERNETES_DIR}/manifests",
            self._lvscare_cmd(ctx),
        )
        await self._verify_registered(ctx, host)

    def _lvscare_cmd(self, ctx: RuntimeContext) -> str:
        return write_lvscare_cmd(
            ctx.vip, ctx.masters, self.settings.lvscare_image, ctx.apiserver_port
        )

    async def join_nodes(
        self, ctx: RuntimeContext, hosts: Sequence[str]
    ) -> RuntimeContext:
        hosts = list(hosts)
        if not hosts:
            return ctx
        ctx = await self._ensure_metadata(ctx)
        await self.executor.wait_ready(hosts)
        if ctx.credentials is None:
            ctx = await self.refresh_credentials(ctx)

        registry = await self._registry(ctx)
        await send_registry_cert(self.executor, ctx, registry, hosts)
        await self.executor.run_on_hosts(
            hosts, lambda h: self._join_node(ctx, h, registry)
        )
        return ctx.add_members(nodes=tuple(hosts))

    # ------------------------------------------------------------------
    # Delete / reset
    # ------------------------------------------------------------------

    async def _clean_host(
        self, ctx: RuntimeContext, host: str, registry: RegistryConfig
    ) -> None:
        await self.executor.cmd_async(
            host,
            kc.clean_cmd(self._verbosity),
            remove_hosts_entry_cmd(ctx.apiserver_domain),
            remove_hosts_entry_cmd(registry.domain),
        )

    async def _delete_host(
        self,
        ctx: RuntimeContext,
        host: str,
        registry: RegistryConfig,
        via: Optional[str],
    ) -> None:
        name = await self.executor.hostname(host)
        await self._clean_host(ctx, host, registry)
        if via is not None:
            await self.executor.cmd(via, kc.delete_node_cmd(name))
        logger.info("[%s] removed node %s", host, name)

    async def delete_masters(
        self, ctx: RuntimeContext, hosts: Sequence[str]
    ) -> RuntimeContext:
        hosts = list(hosts)
        if not hosts:
            return ctx
        registry = await self._registry(ctx)
        remaining = [m for m in ctx.masters if m not in hosts]
        via = await self._membership_master(remaining)
        for host in hosts:
            await self._delete_host(ctx, host, registry, via)

        ctx = ctx.remove_members(masters=tuple(hosts))
        if ctx.nodes and ctx.masters:
            # lvscare must stop balancing onto the removed masters
            lvscare = self._lvscare_cmd(ctx)
            await self.executor.run_on_hosts(
                list(ctx.nodes), lambda h: self.executor.cmd(h, lvscare)
            )
        return ctx

    async def delete_nodes(
        self, ctx: RuntimeContext, hosts: Sequence[str]
    ) -> RuntimeContext:
        hosts = list(hosts)
        if not hosts:
            return ctx
        registry = await self._registry(ctx)
        via = await self._membership_master(ctx.masters)
        await self.executor.run_on_hosts(
            hosts, lambda h: self._delete_host(ctx, h, registry, via)
        )
        return ctx.remove_members(nodes=tuple(hosts))

    async def reset(self, ctx: RuntimeContext) -> RuntimeContext:
        registry = await self._registry(ctx)
        await self.executor.run_on_hosts(
            list(ctx.nodes), lambda h: self._clean_host(ctx, h, registry)
        )
        await self.executor.run_on_hosts(
            list(ctx.masters), lambda h: self._clean_host(ctx, h, registry)
        )
        await recycle_registry(self.executor, ctx, registry)
        return ctx.with_membership(masters=(), nodes=())

    # ------------------------------------------------------------------
    # Upgrade leaves
    # ------------------------------------------------------------------

    async def _upgrade_host(
        self, ctx: RuntimeContext, host: str, *, master: bool, first: bool
    ) -> None:
        version = with_v_prefix(ctx.version)
        name = await self.executor.hostname(host)
        logger.info("[%s] upgrading %s to %s", host, name, version)
        if master:
            await self.executor.cmd_async(host, kc.drain_cmd(name))
        await self.executor.cmd_async(
            host,
            kc.install_binaries_cmd(ctx.rootfs),
            kc.upgrade_apply_cmd(version) if first else kc.upgrade_node_cmd(),
            kc.RESTART_KUBELET,
        )
        await self._wait_node_ready(ctx, host)
        if master:
            await self.executor.cmd_async(host, kc.uncordon_cmd(name))

    async def _node_ready(self, ctx: RuntimeContext, host: str) -> bool:
        try:
            name = await self.executor.hostname(host)
            out = await self.executor.cmd(ctx.master0, kc.node_ready_cmd(name))
        except RemoteCommandError as exc:
            logger.debug("[%s] readiness probe failed: %s", host, exc)
            return False
        return out.strip().endswith("True")

