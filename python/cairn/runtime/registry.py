"""
cairn/runtime/registry.py

The private image registry every cluster image ships: its location comes from
`etc/registry.yaml` inside the image rootfs and defaults to master0.
"""

from __future__ import annotations

import logging
import os
import shlex
from typing import Any, Dict, Sequence

import aiofiles
import yaml
from pydantic import BaseModel

from cairn.models.runtime import RuntimeContext
from cairn.models.settings import CairnSettings
from cairn.models.validator import validate_type
from cairn.remote.executor import RemoteExecutor

logger = logging.getLogger(__name__)

REGISTRY_CONTAINER = "cairn-registry"


class RegistryConfig(BaseModel):
    ip: str
    domain: str
    port: str

    @property
    def hosts_line(self) -> str:
        return f"{self.ip} {self.domain}"

    @property
    def url(self) -> str:
        return f"{self.domain}:{self.port}"


async def load_registry_config(
    local_rootfs: str, master0: str, settings: CairnSettings
) -> RegistryConfig:
    """
    Read `<rootfs>/etc/registry.yaml`; missing fields (or a missing file)
    fall back to master0, the configured domain and port.
    """
    defaults = {
        "ip": master0,
        "domain": settings.registry_domain,
        "port": str(settings.registry_port),
    }
    path = os.path.join(local_rootfs, "etc", "registry.yaml")
    if not os.path.isfile(path):
        logger.debug("No registry config at %s, using defaults", path)
        return RegistryConfig(**defaults)

    async with aiofiles.open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(await f.read()) or {}
    data = validate_type(raw, Dict[str, Any])
    merged = {k: str(data.get(k) or v) for k, v in defaults.items()}
    logger.info("Registry at %s (%s)", merged["ip"], merged["domain"])
    return RegistryConfig(**merged)


def add_hosts_entry_cmd(line: str) -> str:
    q = shlex.quote(line)
    return f"grep -qF {q} /etc/hosts || echo {q} >> /etc/hosts"


def remove_hosts_entry_cmd(name: str) -> str:
    """Drop every /etc/hosts line ending in `name`."""
    pattern = name.replace(".", r"\.")
    return f"sed -i '/ {pattern}$/d' /etc/hosts"


async def ensure_registry(
    executor: RemoteExecutor, ctx: RuntimeContext, cfg: RegistryConfig
) -> None:
    q_rootfs = shlex.quote(ctx.rootfs)
    await executor.cmd_async(
        cfg.ip,
        add_hosts_entry_cmd(cfg.hosts_line),
        f"cd {q_rootfs}/scripts && bash init-registry.sh {cfg.port} "
        f"{q_rootfs}/registry {cfg.domain}",
    )


async def recycle_registry(
    executor: RemoteExecutor, ctx: RuntimeContext, cfg: RegistryConfig
) -> None:
    await executor.cmd_async(
        cfg.ip,
        f"docker rm -f {REGISTRY_CONTAINER} >/dev/null 2>&1 || true",
        remove_hosts_entry_cmd(cfg.domain),
    )


async def send_registry_cert(
    executor: RemoteExecutor,
    ctx: RuntimeContext,
    cfg: RegistryConfig,
    hosts: Sequence[str],
) -> None:
    """Install the registry CA for docker/containerd, if the image ships one."""
    local_cert = os.path.join(ctx.local_rootfs, "certs", f"{cfg.domain}.crt")
    if not os.path.isfile(local_cert):
        return
    remote_cert = f"/etc/docker/certs.d/{cfg.url}/ca.crt"
    await executor.run_on_hosts(
        list(hosts), lambda h: executor.copy(h, local_cert, remote_cert)
    )
