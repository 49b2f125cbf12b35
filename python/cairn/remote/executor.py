"""
cairn/remote/executor.py

RemoteExecutor: every host-touching operation cairn performs goes through here.

  - ping / first_reachable / wait_ready: liveness probing; wait_ready is the
    only place connectivity failures are retried (bounded attempts, linear
    backoff).
  - cmd: run one command, capture combined output.
  - cmd_async: run commands in order, streaming each output line to the logger.
  - copy / fetch: scp transfer verified by md5 on both ends.
  - run_on_hosts / collect_on_hosts: per-host fan-out bound to the executor's
    AbortSignal.

Commands themselves run exactly once. A failed command surfaces as
RemoteCommandError carrying host, command text, exit status and output.
"""

from __future__ import annotations

import logging
import os
import posixpath
import shlex
from contextlib import AsyncExitStack
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar

from cairn.models.settings import CairnSettings
from cairn.models.ssh import SSHConfig, SSHCredentials
from cairn.remote.fanout import AbortSignal, FanOutResult, fan_out
from cairn.remote.ssh import (
    local_md5,
    remote_md5_cmd,
    scp_download_command,
    scp_upload_command,
    ssh_command,
)
from cairn.utils.async_command_runner import (
    CommandError,
    run_command,
    run_command_streamed,
)
from cairn.utils.async_retry import async_retry
from cairn.utils.ephemeral_file import ephemeral_private_key

logger = logging.getLogger(__name__)

T = TypeVar("T")

_OUTPUT_TAIL = 2000


class RemoteCommandError(CommandError):
    """A command exited non-zero on a remote host."""

    def __init__(
        self, host: str, command: str, return_code: Optional[int], output: str
    ) -> None:
        tail = output[-_OUTPUT_TAIL:] if output else ""
        message = f"[{host}] command failed (exit {return_code}): {command}"
        if tail:
            message = f"{message}\n{tail}"
        super().__init__(message, return_code, output)
        self.host = host
        self.command = command


class SSHNotReadyError(Exception):
    """A host never answered an SSH probe within the allowed attempts."""

    def __init__(
        self, host: str, attempts: int, cause: Optional[BaseException] = None
    ) -> None:
        super().__init__(
            f"wait for [{host}] ssh ready timed out after {attempts} attempt(s): "
            f"{cause}; ensure the address and credentials are correct"
        )
        self.host = host
        self.attempts = attempts


class ChecksumMismatchError(Exception):
    """A transferred file or tree does not match its source."""

    def __init__(self, host: str, path: str, expected: str, actual: str) -> None:
        super().__init__(
            f"[{host}] checksum mismatch for {path}: "
            f"expected {expected}, got {actual or '<missing>'}"
        )
        self.host = host
        self.path = path
        self.expected = expected
        self.actual = actual


class RemoteExecutor:
    """
    Runs commands and transfers files on cluster hosts over ssh/scp.

    Use as an async context manager when the credentials carry an inline
    private key: the key is materialised in /dev/shm for the executor's
    lifetime and removed on exit.
    """

    def __init__(
        self,
        credentials: SSHCredentials,
        settings: CairnSettings,
        abort: Optional[AbortSignal] = None,
    ) -> None:
        self.credentials = credentials
        self.settings = settings
        self.abort = abort or AbortSignal()
        self._identity_file: Optional[str] = None
        self._stack: Optional[AsyncExitStack] = None

    async def __aenter__(self) -> RemoteExecutor:
        self._stack = AsyncExitStack()
        if self.credentials.private_key:
            self._identity_file = await self._stack.enter_async_context(
                ephemeral_private_key(self.credentials.private_key)
            )
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        if self._stack is not None:
            await self._stack.aclose()
        self._stack = None
        self._identity_file = None

    def ssh_config(self, host: str) -> SSHConfig:
        return self.credentials.for_host(host, self._identity_file)

    def _ssh_argv(self, host: str, command: str) -> List[str]:
        return ssh_command(
            self.ssh_config(host),
            command,
            connect_timeout=self.settings.ssh_connect_timeout,
        )

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------

    async def ping(self, host: str) -> None:
        """One SSH round trip; raises CommandError if the host is unreachable."""
        await run_command(self._ssh_argv(host, "true"), retries=1)

    async def first_reachable(self, hosts: Sequence[str]) -> Optional[str]:
        """First host, in order, that answers a single ping; None if none do."""
        for host in hosts:
            self.abort.raise_if_aborted()
            try:
                await self.ping(host)
            except CommandError as exc:
                logger.warning("[%s] unreachable, trying the next host: %s", host, exc)
                continue
            return host
        return None

    async def wait_ready(
        self, hosts: List[str], max_tries: Optional[int] = None
    ) -> None:
        """
        Probe every host concurrently until it answers or `max_tries` attempts
        are spent. Slow hosts do not cut short their siblings' retries.

        Raises:
            SSHNotReadyError: for the first host, in input order, that never
                became reachable.
        """
        tries = max_tries if max_tries is not None else self.settings.ssh_ready_tries

        async def _probe(host: str) -> None:
            @async_retry(
                retries=tries,
                delay=self.settings.ssh_backoff_seconds,
                backoff="linear",
                retry_on=(CommandError,),
            )
            async def _attempt() -> None:
                await self.ping(host)

            try:
                await _attempt()
            except CommandError as exc:
                raise SSHNotReadyError(host, tries, exc) from exc

        outcome = await fan_out(hosts, _probe, abort=self.abort)
        for host in outcome.hosts:
            if host in outcome.errors:
                raise outcome.errors[host]

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    async def run_on_hosts(
        self,
        hosts: List[str],
        work: Callable[[str], Awaitable[T]],
        limit: Optional[int] = None,
    ) -> List[T]:
        """
        Run `work` on every host; all started work finishes, then the first
        failure (if any) is raised. Results come back in host order.
        """
        outcome = await fan_out(hosts, work, limit=limit, abort=self.abort)
        outcome.raise_first()
        return outcome.ordered_results()

    async def collect_on_hosts(
        self,
        hosts: List[str],
        work: Callable[[str], Awaitable[T]],
        limit: Optional[int] = None,
    ) -> FanOutResult[T]:
        """Like run_on_hosts, but hands back results and errors unraised."""
        return await fan_out(hosts, work, limit=limit, abort=self.abort)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def cmd(self, host: str, command: str) -> str:
        """
        Run `command` on `host` and return its combined stdout/stderr.
        """
        self.abort.raise_if_aborted()
        logger.debug("[%s] run: %s", host, command)
        try:
            return await run_command(
                self._ssh_argv(host, command), merge_stderr=True, retries=1
            )
        except CommandError as exc:
            raise RemoteCommandError(
                host, command, exc.return_code, exc.output
            ) from exc

    async def cmd_async(self, host: str, *commands: str) -> None:
        """
        Run `commands` on `host` one after another, logging output line by line.
        Stops at the first failing command.
        """
        for command in commands:
            if not command:
                continue
            self.abort.raise_if_aborted()
            logger.debug("[%s] exec: %s", host, command)
            try:
                await run_command_streamed(
                    self._ssh_argv(host, command),
                    lambda line: logger.info("[%s] %s", host, line),
                )
            except CommandError as exc:
                raise RemoteCommandError(
                    host, command, exc.return_code, exc.output
                ) from exc

    async def cmd_to_string(self, host: str, command: str, sep: str = "") -> str:
        out = await self.cmd(host, command)
        return out.replace("\r\n", sep)

    async def hostname(self, host: str) -> str:
        return (await self.cmd(host, "hostname")).strip().lower()

    async def is_file_exist(self, host: str, path: str) -> bool:
        q = shlex.quote(path)
        out = await self.cmd(host, f"if [ -e {q} ]; then echo yes; else echo no; fi")
        return out.strip().endswith("yes")

    async def remote_md5(self, host: str, path: str) -> str:
        out = await self.cmd(host, remote_md5_cmd(path))
        lines = out.strip().splitlines()
        return lines[-1].strip() if lines else ""

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    async def _scp(self, host: str, argv: List[str]) -> None:
        self.abort.raise_if_aborted()
        try:
            await run_command(argv, merge_stderr=True, retries=1)
        except CommandError as exc:
            raise RemoteCommandError(
                host, " ".join(argv[-2:]), exc.return_code, exc.output
            ) from exc

    async def copy(self, host: str, local_path: str, remote_path: str) -> None:
        """
        Copy a local file or directory to `remote_path` on `host`.

        Files land exactly at `remote_path`. Directories are merged into
        `remote_path` (existing remote files not present locally are kept).
        The transfer is skipped when the remote side already matches.

        Raises:
            FileNotFoundError: if `local_path` does not exist.
            ChecksumMismatchError: if the uploaded content differs from the source.
        """
        if not os.path.exists(local_path):
            raise FileNotFoundError(local_path)

        expected = await local_md5(local_path)
        if await self.remote_md5(host, remote_path) == expected:
            logger.debug("[%s] %s already up to date", host, remote_path)
            return

        cfg = self.ssh_config(host)
        timeout = self.settings.ssh_connect_timeout
        if not os.path.isdir(local_path):
            parent = posixpath.dirname(remote_path) or "/"
            await self.cmd(host, f"mkdir -p {shlex.quote(parent)}")
            await self._scp(
                host,
                scp_upload_command(
                    cfg, local_path, remote_path, connect_timeout=timeout
                ),
            )
            await self._verify(host, remote_path, expected)
            return

        staging = remote_path.rstrip("/") + ".cairn-upload"
        q_staging, q_dst = shlex.quote(staging), shlex.quote(remote_path)
        staging_parent = shlex.quote(posixpath.dirname(staging) or "/")
        await self.cmd(host, f"rm -rf {q_staging} && mkdir -p {staging_parent}")
        await self._scp(
            host, scp_upload_command(cfg, local_path, staging, connect_timeout=timeout)
        )
        await self._verify(host, staging, expected)
        await self.cmd(
            host,
            f"mkdir -p {q_dst} && cp -rf {q_staging}/. {q_dst}/ && rm -rf {q_staging}",
        )

    async def _verify(self, host: str, remote_path: str, expected: str) -> None:
        actual = await self.remote_md5(host, remote_path)
        if actual != expected:
            raise ChecksumMismatchError(host, remote_path, expected, actual)

    async def fetch(self, host: str, remote_path: str, local_path: str) -> None:
        """
        Copy `remote_path` from `host` to `local_path`, verifying its md5.
        """
        expected = await self.remote_md5(host, remote_path)
        parent = os.path.dirname(os.path.abspath(local_path))
        os.makedirs(parent, exist_ok=True)
        await self._scp(
            host,
            scp_download_command(
                self.ssh_config(host),
                remote_path,
                local_path,
                connect_timeout=self.settings.ssh_connect_timeout,
            ),
        )
        actual = await local_md5(local_path)
        if actual != expected:
            raise ChecksumMismatchError(host, local_path, expected, actual)
