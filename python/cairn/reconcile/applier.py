"""
cairn/reconcile/applier.py

Entry points for one reconciliation call:

  Applier.apply:  provision -> validate -> persist -> probe -> plan -> execute
  Applier.scale:  rewrite one host group of the stored Clusterfile, then apply
  Applier.delete: mark the stored Clusterfile for deletion, then apply

ClusterStore keeps the desired state as `<work_dir>/<cluster>/Clusterfile`.
"""

from __future__ import annotations

import logging
import os
import shutil
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import aiofiles

from cairn.collaborators import (
    GuestCommandRunner,
    ImagePuller,
    KubectlStateProbe,
    LocalImageStore,
    NoopPluginHookRunner,
    PluginHookRunner,
    Provisioner,
    RootfsGuestRunner,
    RootfsMounter,
    ScpRootfsDistributor,
    StateProbe,
    StaticProvisioner,
)
from cairn.models.cluster import ClusterCurrent, ClusterSpec, Hosts
from cairn.models.plan import ActionPlan, Teardown
from cairn.models.runtime import RuntimeContext
from cairn.models.settings import CairnSettings
from cairn.reconcile import planner
from cairn.reconcile.pipeline import ActionPipeline
from cairn.reconcile.validation import validate_cluster_spec, validate_transition
from cairn.remote.executor import RemoteExecutor
from cairn.remote.fanout import AbortSignal
from cairn.runtime.base import LifecycleRuntime
from cairn.runtime.factory import new_runtime

logger = logging.getLogger(__name__)


class ClusterNotFoundError(Exception):
    """No Clusterfile is stored under the given cluster name."""


class ClusterStore:
    def __init__(self, settings: CairnSettings) -> None:
        self.settings = settings

    async def load(self, name: str) -> Optional[ClusterSpec]:
        path = self.settings.clusterfile_path(name)
        if not os.path.isfile(path):
            return None
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            return ClusterSpec.from_yaml(await f.read())

    async def save(self, cluster: ClusterSpec) -> str:
        """Write the Clusterfile atomically; returns its path."""
        path = self.settings.clusterfile_path(cluster.name)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        tmp = f"{path}.tmp"
        async with aiofiles.open(tmp, "w", encoding="utf-8") as f:
            await f.write(cluster.to_yaml())
        os.replace(tmp, path)
        logger.debug("Saved Clusterfile %s", path)
        return path

    def remove(self, name: str) -> None:
        """Drop all local state of the cluster (Clusterfile, PKI, kubeconfig)."""
        cluster_dir = self.settings.cluster_dir(name)
        if os.path.isdir(cluster_dir):
            shutil.rmtree(cluster_dir)
            logger.info("Removed local state %s", cluster_dir)


def parse_scale_target(value: str) -> Hosts:
    """
    `3` sets a count; `10.0.0.1,10.0.0.2` replaces the address list.

    Raises:
        ValueError: on an empty value.
    """
    value = value.strip()
    if not value:
        raise ValueError("scale target must be a count or a comma-separated IP list")
    if value.isdigit():
        return Hosts(count=value)
    return Hosts(ip_list=[ip.strip() for ip in value.split(",") if ip.strip()])


class Applier:
    """
    Drives one reconciliation. Collaborators default to the local/static
    implementations; the `make_*` hooks build the ones bound to an executor.
    """

    def __init__(
        self,
        settings: CairnSettings,
        *,
        abort: Optional[AbortSignal] = None,
        store: Optional[ClusterStore] = None,
        images: Optional[ImagePuller] = None,
        provisioner: Optional[Provisioner] = None,
        probe: Optional[StateProbe] = None,
        plugins: Optional[PluginHookRunner] = None,
    ) -> None:
        self.settings = settings
        self.abort = abort or AbortSignal()
        self.store = store or ClusterStore(settings)
        self.images = images or LocalImageStore(settings)
        self.provisioner = provisioner or StaticProvisioner()
        self.probe = probe or KubectlStateProbe(settings)
        self.plugins = plugins or NoopPluginHookRunner()

    def make_executor(self, cluster: ClusterSpec) -> RemoteExecutor:
        return RemoteExecutor(cluster.ssh, self.settings, self.abort)

    def make_runtime(
        self, cluster: ClusterSpec, executor: RemoteExecutor
    ) -> LifecycleRuntime:
        return new_runtime(cluster.runtime, executor, self.settings)

    def make_mounter(self, executor: RemoteExecutor) -> RootfsMounter:
        return ScpRootfsDistributor(executor, self.settings)

    def make_guest_runner(self, executor: RemoteExecutor) -> GuestCommandRunner:
        return RootfsGuestRunner(executor)

    async def plan(
        self, desired: ClusterSpec, desired_version: Optional[str] = None
    ) -> Tuple[ActionPlan, Optional[ClusterCurrent]]:
        """Probe and plan without touching any host."""
        current: Optional[ClusterCurrent] = None
        if desired.deletion_timestamp is None:
            current = await self.probe.probe(desired)
        validate_transition(desired, current)
        return planner.plan(desired, current, desired_version), current

    async def apply(self, desired: ClusterSpec) -> ClusterSpec:
        """
        Converge the cluster to `desired`.

        Returns:
            The desired spec as persisted (after provisioning).

        Raises:
            PlanValidationError: before any remote work, on an invalid spec or
                transition.
            Any error raised by the failing action, unchanged.
        """
        desired = await self.provisioner.provision(desired)
        validate_cluster_spec(desired)
        await self.store.save(desired)

        metadata = await self.images.load_metadata(desired.image)
        action_plan, current = await self.plan(
            desired, metadata.version if metadata is not None else None
        )
        if action_plan.is_empty:
            logger.info("Cluster %s is up to date", desired.name)
            return desired
        logger.info(
            "Plan for %s: %s",
            desired.name,
            " -> ".join(str(a) for a in action_plan.actions),
        )

        ctx = RuntimeContext.initial(
            desired,
            self.settings,
            self.images.rootfs_dir(desired.image),
            masters=current.masters if current is not None else None,
            nodes=current.nodes if current is not None else None,
            metadata=metadata,
        )

        async with self.make_executor(desired) as executor:
            pipeline = ActionPipeline(
                self.make_runtime(desired, executor),
                self.images,
                self.make_mounter(executor),
                self.make_guest_runner(executor),
                self.plugins,
                self.abort,
            )
            await pipeline.execute(action_plan, ctx)

        if isinstance(action_plan.intent, Teardown):
            self.store.remove(desired.name)
        logger.info("Cluster %s reconciled", desired.name)
        return desired

    async def _load(self, name: str) -> ClusterSpec:
        cluster = await self.store.load(name)
        if cluster is None:
            raise ClusterNotFoundError(
                f"no Clusterfile for {name!r} in {self.settings.work_dir}"
            )
        return cluster

    async def scale(
        self,
        name: str,
        *,
        masters: Optional[str] = None,
        nodes: Optional[str] = None,
    ) -> ClusterSpec:
        """
        Apply a new count or IP list to the masters and/or nodes of a stored
        cluster. A count keeps the stored addresses and truncates them.
        """
        cluster = await self._load(name)
        update: Dict[str, Any] = {}
        for group, value in (("masters", masters), ("nodes", nodes)):
            if value is None:
                continue
            target = parse_scale_target(value)
            existing: Hosts = getattr(cluster, group)
            if target.count:
                target = Hosts(count=target.count, ip_list=existing.ip_list)
            update[group] = target
        return await self.apply(cluster.model_copy(update=update))

    async def delete(self, name: str) -> ClusterSpec:
        cluster = await self._load(name)
        marked = cluster.model_copy(
            update={"deletion_timestamp": datetime.now(timezone.utc)}
        )
        return await self.apply(marked)


def summarize(cluster: ClusterSpec) -> List[str]:
    return [
        f"cluster: {cluster.name}",
        f"image: {cluster.image}",
        f"masters: {', '.join(cluster.masters.unique_ips()) or '-'}",
        f"nodes: {', '.join(cluster.nodes.unique_ips()) or '-'}",
    ]
