"""
cairn/tests/fakes.py

In-memory stand-ins shared by the test modules: a RemoteExecutor that records
commands instead of shelling out, and recording collaborators/runtimes.
"""

from __future__ import annotations

import os
import re
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from cairn.collaborators import (
    GuestCommandRunner,
    ImagePuller,
    PluginHookRunner,
    PluginPhase,
    RootfsMounter,
    StateProbe,
)
from cairn.models.cluster import ClusterCurrent, ClusterSpec, Hosts
from cairn.models.runtime import ImageMetadata, RuntimeContext
from cairn.models.settings import CairnSettings
from cairn.models.ssh import SSHCredentials
from cairn.remote.executor import RemoteCommandError, RemoteExecutor
from cairn.runtime.base import LifecycleRuntime
from cairn.utils.async_command_runner import CommandError

FIXTURES = os.path.join(os.path.dirname(os.path.abspath(__file__)), "fixtures")


def fixture_text(name: str) -> str:
    with open(os.path.join(FIXTURES, name), "r", encoding="utf-8") as f:
        return f.read()


def make_settings(tmp_path: str, **overrides: object) -> CairnSettings:
    values = {
        "work_dir": os.path.join(str(tmp_path), "work"),
        "image_dir": os.path.join(str(tmp_path), "images"),
        "ssh_backoff_seconds": 0.0,
        "upgrade_poll_interval": 0.0,
        "upgrade_poll_attempts": 3,
    }
    values.update(overrides)
    return CairnSettings(**values)  # type: ignore[arg-type]


def make_cluster(
    masters: Sequence[str] = ("10.0.0.1",),
    nodes: Sequence[str] = (),
    **overrides: object,
) -> ClusterSpec:
    data = {
        "name": "demo",
        "image": "kubernetes:v1.22.15",
        "masters": Hosts(ip_list=list(masters)),
        "nodes": Hosts(ip_list=list(nodes)),
    }
    data.update(overrides)
    return ClusterSpec(**data)  # type: ignore[arg-type]


def make_context(
    settings: CairnSettings,
    cluster: Optional[ClusterSpec] = None,
    *,
    local_rootfs: str = "",
    version: str = "v1.22.15",
    masters: Optional[List[str]] = None,
    nodes: Optional[List[str]] = None,
) -> RuntimeContext:
    cluster = cluster or make_cluster()
    return RuntimeContext.initial(
        cluster,
        settings,
        local_rootfs or os.path.join(settings.image_dir, "demo"),
        masters=masters,
        nodes=nodes,
        metadata=ImageMetadata(version=version),
    )


def decode_written_file(command: str) -> str:
    """Recover the content pushed by write_remote_file_cmd."""
    m = re.search(r"echo '([0-9a-f]*)' \| xxd -r -p", command)
    assert m is not None, f"not a remote file write: {command}"
    return bytes.fromhex(m.group(1)).decode("utf-8")


class RecordingExecutor(RemoteExecutor):
    """
    Records (host, command) pairs. `responses` maps a command substring to the
    output returned for it; `failures` maps (host, substring) to a failure.
    Hosts in `unreachable` fail ping.
    """

    def __init__(
        self,
        settings: CairnSettings,
        *,
        files: Iterable[Tuple[str, str]] = (),
        responses: Optional[Dict[str, str]] = None,
        failures: Iterable[Tuple[str, str]] = (),
        unreachable: Iterable[str] = (),
    ) -> None:
        super().__init__(SSHCredentials(), settings)
        self.files: Set[Tuple[str, str]] = set(files)
        self.responses = dict(responses or {})
        self.failures = list(failures)
        self.unreachable = set(unreachable)
        self.pings: List[str] = []
        self.calls: List[Tuple[str, str]] = []
        self.copies: List[Tuple[str, str, str]] = []
        self.fetches: List[Tuple[str, str, str]] = []
        self.ready_checks: List[List[str]] = []

    async def ping(self, host: str) -> None:
        self.pings.append(host)
        if host in self.unreachable:
            raise CommandError("connection refused", 255)

    async def wait_ready(
        self, hosts: List[str], max_tries: Optional[int] = None
    ) -> None:
        self.ready_checks.append(list(hosts))

    async def cmd(self, host: str, command: str) -> str:
        self.abort.raise_if_aborted()
        self.calls.append((host, command))
        for fail_host, needle in self.failures:
            if fail_host == host and needle in command:
                raise RemoteCommandError(host, command, 1, "boom")
        for needle, out in self.responses.items():
            if needle in command:
                return out
        return ""

    async def cmd_async(self, host: str, *commands: str) -> None:
        for command in commands:
            if command:
                await self.cmd(host, command)

    async def hostname(self, host: str) -> str:
        return "node-" + host.replace(".", "-")

    async def is_file_exist(self, host: str, path: str) -> bool:
        return (host, path) in self.files

    async def copy(self, host: str, local_path: str, remote_path: str) -> None:
        self.calls.append((host, f"<copy {remote_path}>"))
        self.copies.append((host, local_path, remote_path))

    async def fetch(self, host: str, remote_path: str, local_path: str) -> None:
        self.fetches.append((host, remote_path, local_path))
        os.makedirs(os.path.dirname(local_path), exist_ok=True)
        with open(local_path, "w", encoding="utf-8") as f:
            f.write("server: https://apiserver.cluster.local:6443\n")

    def commands_on(self, host: str) -> List[str]:
        return [c for h, c in self.calls if h == host]

    def index_of(self, host: str, needle: str) -> int:
        for i, command in enumerate(self.commands_on(host)):
            if needle in command:
                return i
        raise AssertionError(f"{needle!r} never ran on {host}")


class RecordingRuntime(LifecycleRuntime):
    """Lifecycle runtime that only records calls; membership is kept up to date."""

    def __init__(
        self,
        executor: RemoteExecutor,
        settings: CairnSettings,
        *,
        log: Optional[List[str]] = None,
        fail_hosts: Iterable[str] = (),
        fail_on: str = "",
    ) -> None:
        super().__init__(executor, settings)
        self.log: List[str] = log if log is not None else []
        self.fail_hosts = set(fail_hosts)
        self.fail_on = fail_on

    def _record(self, entry: str) -> None:
        self.log.append(entry)
        if self.fail_on and entry.startswith(self.fail_on):
            raise RuntimeError(f"{entry} failed")

    async def init(self, ctx: RuntimeContext) -> RuntimeContext:
        self._record(f"init:{ctx.master0}")
        return ctx

    async def join_masters(
        self, ctx: RuntimeContext, hosts: Sequence[str]
    ) -> RuntimeContext:
        self._record(f"join_masters:{','.join(hosts)}")
        return ctx.add_members(masters=tuple(hosts))

    async def join_nodes(
        self, ctx: RuntimeContext, hosts: Sequence[str]
    ) -> RuntimeContext:
        self._record(f"join_nodes:{','.join(hosts)}")
        return ctx.add_members(nodes=tuple(hosts))

    async def delete_masters(
        self, ctx: RuntimeContext, hosts: Sequence[str]
    ) -> RuntimeContext:
        self._record(f"delete_masters:{','.join(hosts)}")
        return ctx.remove_members(masters=tuple(hosts))

    async def delete_nodes(
        self, ctx: RuntimeContext, hosts: Sequence[str]
    ) -> RuntimeContext:
        self._record(f"delete_nodes:{','.join(hosts)}")
        return ctx.remove_members(nodes=tuple(hosts))

    async def reset(self, ctx: RuntimeContext) -> RuntimeContext:
        self._record("reset")
        return ctx.with_membership(masters=(), nodes=())

    async def _upgrade_host(
        self, ctx: RuntimeContext, host: str, *, master: bool, first: bool
    ) -> None:
        self.log.append(f"upgrade:{host}")
        if host in self.fail_hosts:
            raise RuntimeError(f"upgrade of {host} failed")

    async def _node_ready(self, ctx: RuntimeContext, host: str) -> bool:
        return True


class FakeImages(ImagePuller):
    def __init__(
        self, root: str, metadata: Optional[ImageMetadata] = None
    ) -> None:
        self.root = root
        self.metadata = metadata
        self.pulled: List[str] = []

    def rootfs_dir(self, image: str) -> str:
        return self.root

    async def pull_if_not_exist(self, image: str) -> str:
        self.pulled.append(image)
        return self.root

    async def load_metadata(self, image: str) -> Optional[ImageMetadata]:
        return self.metadata


class FakeMounter(RootfsMounter):
    def __init__(self, log: List[str]) -> None:
        self.log = log

    async def mount(
        self, cluster: ClusterSpec, image_root: str, hosts: Sequence[str]
    ) -> None:
        self.log.append(f"mount:{','.join(hosts)}")

    async def unmount(self, cluster: ClusterSpec, hosts: Sequence[str]) -> None:
        self.log.append(f"unmount:{','.join(hosts)}")


class FakeGuest(GuestCommandRunner):
    def __init__(self, log: List[str]) -> None:
        self.log = log

    async def run(self, ctx: RuntimeContext) -> None:
        self.log.append("guest")


class FakePlugins(PluginHookRunner):
    def __init__(self, log: List[str]) -> None:
        self.log = log

    async def run_phase(self, phase: PluginPhase, ctx: RuntimeContext) -> None:
        self.log.append(f"plugin:{phase.value}")


class FakeProbe(StateProbe):
    def __init__(self, current: Optional[ClusterCurrent] = None) -> None:
        self.current = current

    async def probe(self, cluster: ClusterSpec) -> Optional[ClusterCurrent]:
        return self.current
