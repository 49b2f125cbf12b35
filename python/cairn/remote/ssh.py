"""
cairn/remote/ssh.py

Builders for the `ssh`/`scp` argument vectors cairn shells out to, plus the
small remote-shell idioms shared by every lifecycle step:

  - write_remote_file_cmd: push file content through `xxd` so no quoting of
    the payload is ever needed.
  - remote_md5_cmd / local_md5: content digests compared after every transfer.
    For a directory the digest covers the sorted `md5sum` listing of its files;
    a missing path yields an empty digest.
"""

from __future__ import annotations

import hashlib
import os
import posixpath
import shlex
from typing import List

import aiofiles

from cairn.models.ssh import SSHConfig

_CHUNK = 1024 * 1024


def ssh_command(
    cfg: SSHConfig, remote_command: str, *, connect_timeout: int
) -> List[str]:
    """
    Build an ssh argv running `remote_command` through the remote login shell.
    """
    return [
        "ssh",
        "-p",
        str(cfg.port),
        *cfg.ssh_options(connect_timeout),
        cfg.target,
        remote_command,
    ]


def scp_upload_command(
    cfg: SSHConfig, local_path: str, remote_path: str, *, connect_timeout: int
) -> List[str]:
    return [
        "scp",
        "-P",
        str(cfg.port),
        *cfg.ssh_options(connect_timeout),
        "-r",
        "-p",
        local_path,
        f"{cfg.target}:{remote_path}",
    ]


def scp_download_command(
    cfg: SSHConfig, remote_path: str, local_path: str, *, connect_timeout: int
) -> List[str]:
    return [
        "scp",
        "-P",
        str(cfg.port),
        *cfg.ssh_options(connect_timeout),
        "-r",
        "-p",
        f"{cfg.target}:{remote_path}",
        local_path,
    ]


def write_remote_file_cmd(content: str, path: str) -> str:
    """
    Remote shell snippet that writes `content` to `path`, creating the parent
    directory first.
    """
    enc = content.encode("utf-8").hex()
    parent = posixpath.dirname(path) or "/"
    return (
        f"mkdir -p {shlex.quote(parent)} && "
        f"echo '{enc}' | xxd -r -p > {shlex.quote(path)}"
    )


def remote_md5_cmd(path: str) -> str:
    p = shlex.quote(path)
    return (
        f"if [ -d {p} ]; then "
        f"cd {p} && find . -type f -print0 | LC_ALL=C sort -z | xargs -0 -r md5sum "
        f"| md5sum | cut -d' ' -f1; "
        f"elif [ -f {p} ]; then md5sum {p} | cut -d' ' -f1; fi"
    )


async def _file_md5(path: str) -> str:
    digest = hashlib.md5()
    async with aiofiles.open(path, "rb") as f:
        while True:
            chunk = await f.read(_CHUNK)
            if not chunk:
                break
            digest.update(chunk)
    return digest.hexdigest()


async def local_md5(path: str) -> str:
    """
    Digest matching `remote_md5_cmd` for the same file or directory tree.
    Symlinked directories are followed, since `scp -r` uploads their contents
    as regular files.
    """
    if not os.path.isdir(path):
        return await _file_md5(path)

    rel_files = sorted(
        "./" + os.path.relpath(os.path.join(root, name), path).replace(os.sep, "/")
        for root, _, files in os.walk(path, followlinks=True)
        for name in files
    )
    listing = [
        f"{await _file_md5(os.path.join(path, rel[2:]))}  {rel}\n" for rel in rel_files
    ]
    return hashlib.md5("".join(listing).encode("utf-8")).hexdigest()
