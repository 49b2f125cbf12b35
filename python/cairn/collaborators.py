"""
cairn/collaborators.py

Narrow interfaces to everything the reconciliation core consumes but does not
own, plus the default implementations cairnctl wires in:

  - ImagePuller        -> LocalImageStore      (unpacked images on local disk)
  - RootfsMounter      -> ScpRootfsDistributor (rootfs copied to every host)
  - GuestCommandRunner -> RootfsGuestRunner    (image-declared commands on master0)
  - Provisioner        -> StaticProvisioner    (static IP lists, count-truncated)
  - PluginHookRunner   -> NoopPluginHookRunner
  - StateProbe         -> KubectlStateProbe    (`kubectl get nodes -o json`)
"""

from __future__ import annotations

import json
import logging
import os
import shlex
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from cairn.models.cluster import ClusterCurrent, ClusterSpec, Hosts, Provider
from cairn.models.runtime import ImageMetadata, RuntimeContext
from cairn.models.settings import CairnSettings
from cairn.reconcile.validation import PlanValidationError
from cairn.remote.executor import RemoteExecutor
from cairn.remote.ssh import write_remote_file_cmd
from cairn.runtime.metadata import load_image_metadata
from cairn.utils.async_command_runner import run_command

logger = logging.getLogger(__name__)

ROOTFS_MARKER = ".cairn-image"

MASTER_ROLE_LABELS = (
    "node-role.kubernetes.io/control-plane",
    "node-role.kubernetes.io/master",
)


class ImageNotFoundError(Exception):
    """The named cluster image is not available locally."""


class PluginPhase(str, Enum):
    PRE_INIT = "PreInit"
    PRE_INSTALL = "PreInstall"
    POST_INSTALL = "PostInstall"
    PRE_CLEAN = "PreClean"
    POST_CLEAN = "PostClean"


# ----------------------------------------------------------------------
# Interfaces
# ----------------------------------------------------------------------


class ImagePuller(ABC):
    @abstractmethod
    def rootfs_dir(self, image: str) -> str:
        """Local directory the image rootfs is (or will be) unpacked to."""

    @abstractmethod
    async def pull_if_not_exist(self, image: str) -> str:
        """
        Make `image` available locally.

        Returns:
            The local directory holding the image rootfs.
        """

    @abstractmethod
    async def load_metadata(self, image: str) -> Optional[ImageMetadata]:
        pass


class RootfsMounter(ABC):
    @abstractmethod
    async def mount(
        self, cluster: ClusterSpec, image_root: str, hosts: Sequence[str]
    ) -> None:
        """Place the image rootfs on every host in `hosts`."""

    @abstractmethod
    async def unmount(self, cluster: ClusterSpec, hosts: Sequence[str]) -> None:
        pass


class GuestCommandRunner(ABC):
    @abstractmethod
    async def run(self, ctx: RuntimeContext) -> None:
        """Run the image's post-install commands against the cluster."""


class Provisioner(ABC):
    @abstractmethod
    async def provision(self, cluster: ClusterSpec) -> ClusterSpec:
        """Return `cluster` with IP lists matching the requested counts."""


class PluginHookRunner(ABC):
    @abstractmethod
    async def run_phase(self, phase: PluginPhase, ctx: RuntimeContext) -> None:
        pass


class StateProbe(ABC):
    @abstractmethod
    async def probe(self, cluster: ClusterSpec) -> Optional[ClusterCurrent]:
        """
        Returns:
            The observed cluster, or None if no cluster exists.
        """


# ----------------------------------------------------------------------
# Images and rootfs
# ----------------------------------------------------------------------


def image_dir_name(image: str) -> str:
    """Filesystem-safe directory name for an image reference."""
    return image.replace("/", "_").replace(":", "_")


class LocalImageStore(ImagePuller):
    """
    Images are pre-unpacked under `<image_dir>/<image name>`; this store never
    reaches out to a network registry.
    """

    def __init__(self, settings: CairnSettings) -> None:
        self.settings = settings

    def rootfs_dir(self, image: str) -> str:
        return os.path.join(self.settings.image_dir, image_dir_name(image))

    async def pull_if_not_exist(self, image: str) -> str:
        root = self.rootfs_dir(image)
        if not os.path.isdir(root):
            raise ImageNotFoundError(
                f"image {image!r} not found in {self.settings.image_dir}"
            )
        logger.debug("Image %s available at %s", image, root)
        return root

    async def load_metadata(self, image: str) -> Optional[ImageMetadata]:
        return await load_image_metadata(self.rootfs_dir(image))


class ScpRootfsDistributor(RootfsMounter):
    """
    Copies the image rootfs to `<remote_data_dir>/<cluster>/rootfs` on each
    host, at most `transfer_concurrency` hosts at a time, then runs the
    image's `scripts/init.sh`. A marker file naming the image makes repeat
    mounts of the same image a no-op.
    """

    def __init__(self, executor: RemoteExecutor, settings: CairnSettings) -> None:
        self.executor = executor
        self.settings = settings

    async def _mounted_image(self, host: str, rootfs: str) -> str:
        marker = shlex.quote(f"{rootfs}/{ROOTFS_MARKER}")
        out = await self.executor.cmd(host, f"cat {marker} 2>/dev/null || true")
        return out.strip()

    async def _mount_one(
        self, cluster: ClusterSpec, image_root: str, host: str
    ) -> None:
        rootfs = self.settings.remote_rootfs(cluster.name)
        if await self._mounted_image(host, rootfs) == cluster.image:
            logger.info("[%s] rootfs for %s already in place", host, cluster.image)
            return

        await self.executor.copy(host, image_root, rootfs)
        if os.path.isfile(os.path.join(image_root, "scripts", "init.sh")):
            await self.executor.cmd_async(
                host, f"cd {shlex.quote(rootfs)}/scripts && bash init.sh"
            )
        await self.executor.cmd(
            host,
            write_remote_file_cmd(cluster.image + "\n", f"{rootfs}/{ROOTFS_MARKER}"),
        )

    async def mount(
        self, cluster: ClusterSpec, image_root: str, hosts: Sequence[str]
    ) -> None:
        hosts = list(hosts)
        if not hosts:
            return
        await self.executor.wait_ready(hosts)
        await self.executor.run_on_hosts(
            hosts,
            lambda h: self._mount_one(cluster, image_root, h),
            limit=self.settings.transfer_concurrency,
        )

    async def _unmount_one(self, rootfs: str, host: str) -> None:
        q = shlex.quote(rootfs)
        await self.executor.cmd_async(
            host,
            f"if [ -f {q}/scripts/clean.sh ]; then "
            f"cd {q}/scripts && bash clean.sh; fi",
            f"rm -rf {q}",
        )

    async def unmount(self, cluster: ClusterSpec, hosts: Sequence[str]) -> None:
        rootfs = self.settings.remote_rootfs(cluster.name)
        await self.executor.run_on_hosts(
            list(hosts), lambda h: self._unmount_one(rootfs, h)
        )


class RootfsGuestRunner(GuestCommandRunner):
    def __init__(self, executor: RemoteExecutor) -> None:
        self.executor = executor

    async def run(self, ctx: RuntimeContext) -> None:
        cmds = ctx.metadata.cmds if ctx.metadata is not None else []
        if not cmds:
            logger.debug("Image declares no guest commands")
            return
        q = shlex.quote(ctx.rootfs)
        await self.executor.cmd_async(
            ctx.master0, *[f"cd {q} && {c}" for c in cmds]
        )


# ----------------------------------------------------------------------
# Provisioning and plugins
# ----------------------------------------------------------------------


def truncate_to_count(group: str, hosts: Hosts) -> Hosts:
    """
    Apply `hosts.count` to a static IP list, keeping the first entries (so
    master0 always survives a scale-down).

    Raises:
        PlanValidationError: if more hosts are requested than listed.
    """
    ips = hosts.unique_ips()
    want = hosts.desired_count
    if want is None:
        return Hosts(count=hosts.count, ip_list=ips)
    if want > len(ips):
        raise PlanValidationError(
            f"{group}: count {want} exceeds the {len(ips)} listed address(es)"
        )
    return Hosts(count=hosts.count, ip_list=ips[:want])


class StaticProvisioner(Provisioner):
    async def provision(self, cluster: ClusterSpec) -> ClusterSpec:
        if cluster.provider is not Provider.BAREMETAL:
            logger.warning(
                "Provider %s has no provisioner; using listed addresses",
                cluster.provider.value,
            )
        return cluster.model_copy(
            update={
                "masters": truncate_to_count("masters", cluster.masters),
                "nodes": truncate_to_count("nodes", cluster.nodes),
            }
        )


class NoopPluginHookRunner(PluginHookRunner):
    async def run_phase(self, phase: PluginPhase, ctx: RuntimeContext) -> None:
        logger.debug("No plugins for phase %s", phase.value)


# ----------------------------------------------------------------------
# State probe
# ----------------------------------------------------------------------


def _internal_ip(item: Dict[str, Any]) -> str:
    for addr in item.get("status", {}).get("addresses", []):
        if addr.get("type") == "InternalIP":
            return str(addr.get("address", ""))
    return ""


def _is_master(item: Dict[str, Any]) -> bool:
    labels = item.get("metadata", {}).get("labels", {}) or {}
    return any(label in labels for label in MASTER_ROLE_LABELS)


def parse_nodes_json(raw: str) -> ClusterCurrent:
    """
    Build a ClusterCurrent from `kubectl get nodes -o json`.
    Masters are ordered oldest first, so the bootstrap master stays at index 0.
    """
    items: List[Dict[str, Any]] = json.loads(raw).get("items", [])
    items = sorted(
        items, key=lambda i: str(i.get("metadata", {}).get("creationTimestamp", ""))
    )

    masters: List[str] = []
    nodes: List[str] = []
    version: Optional[str] = None
    host_versions: Dict[str, str] = {}
    for item in items:
        ip = _internal_ip(item)
        if not ip:
            continue
        kubelet = item.get("status", {}).get("nodeInfo", {}).get("kubeletVersion")
        if kubelet:
            host_versions[ip] = str(kubelet)
        if _is_master(item):
            masters.append(ip)
            if version is None:
                version = kubelet
        else:
            nodes.append(ip)
    return ClusterCurrent(
        masters=masters, nodes=nodes, version=version, host_versions=host_versions
    )


class KubectlStateProbe(StateProbe):
    """Reads node membership with the admin kubeconfig fetched at init."""

    def __init__(self, settings: CairnSettings) -> None:
        self.settings = settings

    async def probe(self, cluster: ClusterSpec) -> Optional[ClusterCurrent]:
        kubeconfig = self.settings.kubeconfig_path(cluster.name)
        if not os.path.isfile(kubeconfig):
            logger.debug("No kubeconfig at %s; cluster not bootstrapped", kubeconfig)
            return None
        kubectl = self.settings.kubectl_path(cluster.name)
        if not os.path.isfile(kubectl):
            kubectl = "kubectl"
        raw = await run_command(
            [kubectl, "--kubeconfig", kubeconfig, "get", "nodes", "-o", "json"],
            sensitive=False,
        )
        current = parse_nodes_json(raw)
        logger.info(
            "Observed %d master(s), %d node(s), version %s",
            len(current.masters),
            len(current.nodes),
            current.version or "unknown",
        )
        return current
