"""
cairn/utils/async_command_runner.py

Provides a reusable asynchronous command runner with retry logic, used for every
local and SSH-wrapped subprocess in cairn. Two flavours:

  - run_command: capture output and return it once the process exits.
  - run_command_streamed: deliver output line by line to a callback while the
    process runs (used for long remote steps such as 'kubeadm join').

Both accept `successful_return_codes` (defaults to [0]) and raise CommandError
otherwise. If the awaiting task is cancelled, the child process is killed before
the cancellation propagates, so an aborted reconciliation leaves no stray ssh
processes behind.

Usage example:
    from cairn.utils.async_command_runner import run_command, CommandError

    try:
        out = await run_command(["kubectl", "get", "nodes", "-o", "json"])
    except CommandError as err:
        print(f"Command failed: {err}")
"""

from __future__ import annotations

import os
import asyncio
from typing import Callable, Dict, List, Optional

from cairn.utils.async_retry import async_retry


class CommandError(Exception):
    """Represents a failure when executing a shell command.

    Attributes:
        message (str): The error message describing the command failure.
        return_code (Optional[int]): The exit code if available.
        output (str): Captured output, if any was collected.
    """

    def __init__(
        self, message: str, return_code: Optional[int] = None, output: str = ""
    ) -> None:
        """
        Initialize a CommandError.

        Args:
            message (str): The error message describing the command failure.
            return_code (Optional[int]): The exit code if known.
            output (str): Captured stdout/stderr of the failed command.
        """
        super().__init__(message)
        self.return_code = return_code
        self.output = output


def _build_env(
    env: Optional[Dict[str, str]], suppress_env_vars: Optional[List[str]]
) -> Optional[Dict[str, str]]:
    if env is None and not suppress_env_vars:
        return None
    proc_env = os.environ.copy()
    for var in suppress_env_vars or []:
        proc_env.pop(var, None)
    if env:
        proc_env.update(env)
    return proc_env


def _failure_message(
    command: List[str], return_code: Optional[int], output: str, sensitive: bool
) -> str:
    detail = ""
    if not sensitive:
        detail = f"\nCommand: {' '.join(command)}\nOutput: {output}"
    return f"Command failed with return code {return_code}.{detail}"


async def _kill_quietly(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()


async def run_command(
    command: List[str],
    *,
    sensitive: bool = True,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
    input_data: Optional[str] = None,
    successful_return_codes: Optional[List[int]] = None,
    retries: int = 1,
    retry_delay: float = 1.0,
    merge_stderr: bool = False,
    suppress_env_vars: Optional[List[str]] = None,
    error_parser: Optional[Callable[[str], Optional[str]]] = None,
) -> str:
    """
    Executes a local command in a subprocess, asynchronously, with optional retries
    and an optional error parser callback.

    If the command fails (return code not in successful_return_codes), we raise
    CommandError. If `error_parser` is given, we pass the error output to it, and if
    it returns a non-None string, we raise that as a short user-friendly message.

    When `sensitive=True`, we omit the command and its output from the error message
    (the output is still attached to the exception as `.output`).

    Args:
        command (List[str]):
            The command and arguments to execute.
        sensitive (bool):
            If True, hides command details in the raised error message.
        env (Optional[Dict[str, str]]):
            Additional environment variables to add or override.
        cwd (Optional[str]):
            Working directory for the command.
        input_data (Optional[str]):
            If provided, passed to stdin.
        successful_return_codes (Optional[List[int]]):
            Which return codes won't be treated as errors. Defaults to [0].
        retries (int):
            Total number of attempts. Defaults to 1 (no retry).
        retry_delay (float):
            Delay in seconds between attempts. Defaults to 1.0.
        merge_stderr (bool):
            If True, stderr is folded into stdout (combined output capture).
        suppress_env_vars (Optional[List[str]]):
            A list of environment variables to remove from the environment.
        error_parser (Optional[Callable[[str], Optional[str]]]):
            A callback that receives the error output. If it returns a non-None
            value, we raise a short CommandError with that message.

    Returns:
        str: The captured (stripped) stdout of the command on success.

    Raises:
        CommandError: If the command fails after all attempts.
    """
    ok_codes = successful_return_codes if successful_return_codes is not None else [0]

    @async_retry(retries=retries, delay=retry_delay)
    async def _inner_run_command() -> str:
        stdin = asyncio.subprocess.PIPE if input_data else asyncio.subprocess.DEVNULL
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdin=stdin,
            stdout=asyncio.subprocess.PIPE,
            stderr=(
                asyncio.subprocess.STDOUT if merge_stderr else asyncio.subprocess.PIPE
            ),
            env=_build_env(env, suppress_env_vars),
            cwd=cwd,
        )
        try:
            stdout_bytes, stderr_bytes = await proc.communicate(
                input=input_data.encode() if input_data else None
            )
        except asyncio.CancelledError:
            await _kill_quietly(proc)
            raise

        stdout_str = stdout_bytes.decode(errors="replace").strip()
        stderr_str = (stderr_bytes or b"").decode(errors="replace").strip()

        if proc.returncode not in ok_codes:
            error_text = stderr_str or stdout_str
            short_message = error_parser(error_text) if error_parser else None
            if short_message is not None:
                raise CommandError(short_message, proc.returncode, error_text)

            combined = "\n".join(s for s in (stdout_str, stderr_str) if s)
            raise CommandError(
                _failure_message(command, proc.returncode, combined, sensitive),
                proc.returncode,
                combined,
            )

        return stdout_str

    return await _inner_run_command()


async def run_command_streamed(
    command: List[str],
    on_line: Callable[[str], None],
    *,
    sensitive: bool = True,
    env: Optional[Dict[str, str]] = None,
    cwd: Optional[str] = None,
    successful_return_codes: Optional[List[int]] = None,
) -> str:
    """
    Runs a command with stdout and stderr merged, handing each decoded line to
    `on_line` as soon as it arrives. No retries: streamed steps are usually not
    safe to replay blindly.

    Returns:
        The full output (joined lines) on success.

    Raises:
        CommandError: On a return code outside `successful_return_codes`.
    """
    ok_codes = successful_return_codes if successful_return_codes is not None else [0]
    proc = await asyncio.create_subprocess_exec(
        *command,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        env=_build_env(env, None),
        cwd=cwd,
    )
    lines: List[str] = []
    try:
        assert proc.stdout is not None
        while True:
            raw = await proc.stdout.readline()
            if not raw:
                break
            line = raw.decode(errors="replace").rstrip("\r\n")
            lines.append(line)
            on_line(line)
        await proc.wait()
    except asyncio.CancelledError:
        await _kill_quietly(proc)
        raise

    output = "\n".join(lines)
    if proc.returncode not in ok_codes:
        raise CommandError(
            _failure_message(command, proc.returncode, output, sensitive),
            proc.returncode,
            output,
        )
    return output
