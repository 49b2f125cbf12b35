"""
cairn/models/runtime.py

Per-invocation runtime state. A RuntimeContext is immutable: lifecycle steps
return an updated copy instead of mutating shared fields, so every value a
step depends on is visible in its arguments.
"""

from __future__ import annotations

import os
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from cairn.models.cluster import ClusterSpec
from cairn.models.settings import CairnSettings


class JoinCredentials(BaseModel):
    """Short-lived credentials authorizing a host to join the cluster."""

    model_config = ConfigDict(frozen=True)

    token: str
    discovery_ca_hash: str = ""
    certificate_key: str = ""
    # k0s issues separate tokens per role; kubeadm leaves this empty.
    controller_token: str = ""


class ImageMetadata(BaseModel):
    """The `Metadata` JSON document shipped at the root of a cluster image."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    version: str
    arch: str = "amd64"
    variant: str = ""
    cluster_runtime: str = Field(default="kubernetes", alias="clusterRuntime")
    cmds: List[str] = Field(default_factory=list)


class RuntimeContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    cluster: ClusterSpec
    # Rootfs directory on every remote host.
    rootfs: str
    # Local image rootfs (registry.yaml, scripts, binaries are read from here).
    local_rootfs: str
    # Local per-cluster state dir; generated PKI and kubeconfigs live here.
    base_path: str
    vip: str
    apiserver_domain: str
    apiserver_port: int = 6443
    masters: Tuple[str, ...] = ()
    nodes: Tuple[str, ...] = ()
    cert_sans: Tuple[str, ...] = ()
    dns_domain: str = "cluster.local"
    metadata: Optional[ImageMetadata] = None
    credentials: Optional[JoinCredentials] = None

    @classmethod
    def initial(
        cls,
        cluster: ClusterSpec,
        settings: CairnSettings,
        local_rootfs: str,
        *,
        masters: Optional[List[str]] = None,
        nodes: Optional[List[str]] = None,
        metadata: Optional[ImageMetadata] = None,
    ) -> RuntimeContext:
        """
        Build the context for one reconciliation pass. `masters`/`nodes` are the
        live membership; they default to the desired host lists.
        """
        return cls(
            cluster=cluster,
            rootfs=settings.remote_rootfs(cluster.name),
            local_rootfs=local_rootfs,
            base_path=settings.cluster_dir(cluster.name),
            vip=settings.vip,
            apiserver_domain=settings.apiserver_domain,
            apiserver_port=settings.apiserver_port,
            masters=tuple(
                masters if masters is not None else cluster.masters.unique_ips()
            ),
            nodes=tuple(nodes if nodes is not None else cluster.nodes.unique_ips()),
            cert_sans=tuple(cluster.cert_sans),
            metadata=metadata,
        )

    @property
    def master0(self) -> str:
        if not self.masters:
            raise ValueError(f"cluster {self.cluster.name!r} has no masters")
        return self.masters[0]

    @property
    def version(self) -> str:
        if self.metadata is None:
            raise ValueError("image metadata has not been loaded")
        return self.metadata.version

    @property
    def cert_path(self) -> str:
        return os.path.join(self.base_path, "pki")

    @property
    def etcd_cert_path(self) -> str:
        return os.path.join(self.cert_path, "etcd")

    def with_credentials(self, credentials: JoinCredentials) -> RuntimeContext:
        return self.model_copy(update={"credentials": credentials})

    def with_membership(
        self,
        *,
        masters: Optional[Tuple[str, ...]] = None,
        nodes: Optional[Tuple[str, ...]] = None,
    ) -> RuntimeContext:
        update: Dict[str, Any] = {}
        if masters is not None:
            update["masters"] = tuple(masters)
        if nodes is not None:
            update["nodes"] = tuple(nodes)
        return self.model_copy(update=update)

    def add_members(
        self, *, masters: Tuple[str, ...] = (), nodes: Tuple[str, ...] = ()
    ) -> RuntimeContext:
        return self.with_membership(
            masters=tuple(dict.fromkeys(self.masters + tuple(masters))),
            nodes=tuple(dict.fromkeys(self.nodes + tuple(nodes))),
        )

    def remove_members(
        self, *, masters: Tuple[str, ...] = (), nodes: Tuple[str, ...] = ()
    ) -> RuntimeContext:
        return self.with_membership(
            masters=tuple(m for m in self.masters if m not in masters),
            nodes=tuple(n for n in self.nodes if n not in nodes),
        )
