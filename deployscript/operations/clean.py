"""
Empty a remote directory by removing and recreating it
"""
import asyncio

import paramiko

from ..errors import PreconditionError, TransferError
from ..utils.logging import log
from ..utils.paths import to_posix


async def clean(session, remote_dir: str):
    """Afterwards remote_dir exists and is empty, whatever it held before."""
    if not session.connected:
        raise PreconditionError("clean: ssh server not connected")
    remote = to_posix(remote_dir)
    if not await session.exists_directory(remote):
        raise PreconditionError(f"Remote directory not exists: {remote}")

    log(f"[clean] removing {remote} …")
    await session.remove_recursive(remote)

    async with session.sftp() as channel:
        try:
            await asyncio.to_thread(channel.mkdir, remote)
        except (paramiko.SSHException, OSError) as exc:
            raise TransferError(f"could not recreate {remote}: {exc}", path=remote) from exc
    log("[clean] done ✓")
