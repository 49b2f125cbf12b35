"""
cairn/utils/ephemeral_file.py

Async context managers for short-lived secret files, placed in `/dev/shm` when it
exists (memory-backed, never hits disk) and in the system temp dir otherwise.

  - ephemeral_manager: create one private directory, yield a file path inside it,
    remove everything on exit.
  - ephemeral_private_key: materialise an inline SSH private key with 0600 perms
    and yield its path.
"""

import os
import tempfile
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import aiofiles


def _default_parent_dir() -> Optional[str]:
    return "/dev/shm" if os.path.isdir("/dev/shm") else None


@asynccontextmanager
async def ephemeral_manager(
    single_file_name: str,
    *,
    prefix: str = "ephemeral-",
    parent_dir: Optional[str] = None,
) -> AsyncGenerator[str, None]:
    """
    Yield a path named `single_file_name` inside a fresh private directory.

    The file itself is not created; callers write it. On exit the file (if any)
    and the directory are removed.

    Args:
        single_file_name: The ephemeral filename.
        prefix: Prefix for the ephemeral directory name.
        parent_dir: Where to create the directory. Defaults to /dev/shm if present.
    """
    ephemeral_dir = tempfile.mkdtemp(
        dir=parent_dir or _default_parent_dir(), prefix=prefix
    )
    try:
        yield os.path.join(ephemeral_dir, single_file_name)
    finally:
        for item in os.listdir(ephemeral_dir):
            item_path = os.path.join(ephemeral_dir, item)
            if os.path.isfile(item_path) or os.path.islink(item_path):
                os.remove(item_path)
        os.rmdir(ephemeral_dir)


@asynccontextmanager
async def ephemeral_private_key(key_material: str) -> AsyncGenerator[str, None]:
    """
    Write `key_material` to an ephemeral 0600 file and yield its path.
    """
    async with ephemeral_manager("ssh_idkey", prefix="cairn-pk-") as pk_path:
        async with aiofiles.open(pk_path, "wb") as fpk:
            data = key_material if key_material.endswith("\n") else key_material + "\n"
            await fpk.write(data.encode("utf-8"))
        os.chmod(pk_path, 0o600)
        yield pk_path
