"""
cairn/models/cluster.py

Pydantic models for the declared (ClusterSpec) and observed (ClusterCurrent)
state of one cluster. The ClusterSpec round-trips through the persisted
Clusterfile YAML document.
"""

from __future__ import annotations

import ipaddress
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import yaml
from pydantic import BaseModel, Field, field_validator

from cairn.models.ssh import SSHCredentials


class Provider(str, Enum):
    BAREMETAL = "BAREMETAL"
    CONTAINER = "CONTAINER"
    ALI_CLOUD = "ALI_CLOUD"


class RuntimeFlavor(str, Enum):
    KUBEADM = "kubeadm"
    K0S = "k0s"


def unique_in_order(ips: List[str]) -> List[str]:
    """Drop duplicate entries, keeping the first occurrence of each."""
    return list(dict.fromkeys(ip.strip() for ip in ips if ip.strip()))


class Hosts(BaseModel):
    """
    A host group: a set of addresses plus a target cardinality.

    `count` is a string as written in the Clusterfile ("" means "not set").
    For provisioned deployments it is authoritative and `ip_list` is filled
    in by a Provisioner; for static deployments `ip_list` is authoritative.
    """

    count: str = ""
    ip_list: List[str] = Field(default_factory=list)

    @field_validator("count", mode="before")
    @classmethod
    def validate_count(cls, val: Any) -> str:
        val = "" if val is None else str(val).strip()
        if val and (not val.isdigit()):
            raise ValueError(f"count must be a non-negative integer, got {val!r}")
        return val

    @property
    def desired_count(self) -> Optional[int]:
        return int(self.count) if self.count else None

    def unique_ips(self) -> List[str]:
        return unique_in_order(self.ip_list)


class NetworkConfig(BaseModel):
    pod_cidr: str = "100.64.0.0/10"
    svc_cidr: str = "10.96.0.0/22"
    cni_name: str = "calico"
    interface: str = ""
    without_cni: bool = False
    ipip: bool = True
    mtu: str = ""

    @field_validator("pod_cidr", "svc_cidr")
    @classmethod
    def validate_cidr(cls, val: str) -> str:
        ipaddress.ip_network(val, strict=False)
        return val

    @property
    def effective_mtu(self) -> str:
        if self.mtu:
            return self.mtu
        return "1480" if self.ipip else "1450"


class ClusterSpec(BaseModel):
    """
    Desired state of one cluster.

    A non-None `deletion_timestamp` marks the cluster for teardown; every other
    difference is then ignored.
    """

    name: str = Field(min_length=1)
    image: str = Field(min_length=1)
    provider: Provider = Provider.BAREMETAL
    runtime: RuntimeFlavor = RuntimeFlavor.KUBEADM
    ssh: SSHCredentials = Field(default_factory=SSHCredentials)
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    cert_sans: List[str] = Field(default_factory=list)
    masters: Hosts = Field(default_factory=Hosts)
    nodes: Hosts = Field(default_factory=Hosts)
    deletion_timestamp: Optional[datetime] = None
    kubeadm_config_file: Optional[str] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, val: str) -> str:
        if "/" in val or val in (".", ".."):
            raise ValueError(f"invalid cluster name {val!r}")
        return val

    @property
    def master0(self) -> str:
        return self.masters.unique_ips()[0]

    def all_hosts(self) -> List[str]:
        return unique_in_order(self.masters.ip_list + self.nodes.ip_list)

    def to_yaml(self, *, sort_keys: bool = False) -> str:
        """
        Serialize this ClusterSpec to a YAML string using PyYAML.
        """
        data: Dict[str, Any] = self.model_dump(mode="json", exclude_none=True)
        return yaml.safe_dump(data, sort_keys=sort_keys)

    @classmethod
    def from_yaml(cls, yaml_str: str) -> ClusterSpec:
        """
        Deserialize a ClusterSpec from a YAML string.
        """
        data = yaml.safe_load(yaml_str)
        if not isinstance(data, dict):
            raise ValueError("Clusterfile must contain a YAML mapping")
        return cls.model_validate(data)


class ClusterCurrent(BaseModel):
    """
    Observed state: what is actually running. Absence of a cluster is
    represented by `None` at the call sites, never by an empty instance.
    """

    masters: List[str] = Field(default_factory=list)
    nodes: List[str] = Field(default_factory=list)
    version: Optional[str] = None
    # kubelet version reported by each live host, keyed by IP
    host_versions: Dict[str, str] = Field(default_factory=dict)

    def as_hosts(self) -> Tuple[Hosts, Hosts]:
        return Hosts(ip_list=list(self.masters)), Hosts(ip_list=list(self.nodes))
