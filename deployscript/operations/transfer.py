"""
Recursive, concurrent directory copy over one SFTP channel

Each directory level is listed once and its entries fan out concurrently;
the level joins before its caller returns. A subdirectory always exists
before any of its children start. A shared semaphore bounds how many SFTP
calls are in flight at once.
"""
import asyncio
import os
import stat
from pathlib import Path
from typing import Optional

import paramiko

from .. import config as _cfg
from ..errors import PreconditionError, TransferError
from ..utils.logging import log, vlog
from ..utils.paths import join_remote, to_posix


def _make_gate(gate: Optional[asyncio.Semaphore]) -> asyncio.Semaphore:
    return gate or asyncio.Semaphore(_cfg.TRANSFER_CONCURRENCY)


async def _sftp_call(gate: asyncio.Semaphore, what: str, path: str, fn, *args):
    async with gate:
        call = asyncio.ensure_future(asyncio.to_thread(fn, *args))
        try:
            return await asyncio.shield(call)
        except asyncio.CancelledError:
            # a worker thread can't be interrupted; wait until it lets go of the channel
            await asyncio.gather(call, return_exceptions=True)
            raise
        except (paramiko.SSHException, OSError, EOFError) as exc:
            raise TransferError(f"{what} failed for {path}: {exc}", path=path) from exc


async def _fan_out(jobs: list):
    """Run one directory level; the first failure cancels its siblings."""
    tasks = [asyncio.ensure_future(job) for job in jobs]
    if not tasks:
        return
    try:
        await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


# ── remote → local ───────────────────────────────────────────────────────────

async def download_tree(sftp, remote_dir: str, local_dir, *,
                        gate: Optional[asyncio.Semaphore] = None):
    """Mirror remote_dir into local_dir (which must already exist)."""
    gate = _make_gate(gate)
    remote_dir = to_posix(remote_dir)
    local_dir = Path(local_dir)
    entries = await _sftp_call(gate, "listdir", remote_dir, sftp.listdir_attr, remote_dir)

    # local directories first, so a failing mkdir leaves no job unawaited
    subdirs = {e.filename for e in entries if stat.S_ISDIR(e.st_mode or 0)}
    for name in sorted(subdirs):
        local_path = local_dir / name
        try:
            local_path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise TransferError(f"mkdir failed for {local_path}: {exc}", path=str(local_path)) from exc

    jobs = []
    for entry in entries:
        remote_path = join_remote(remote_dir, entry.filename)
        local_path = local_dir / entry.filename
        if entry.filename in subdirs:
            jobs.append(download_tree(sftp, remote_path, local_path, gate=gate))
        else:
            vlog(f"  [GET] {remote_path}")
            jobs.append(_sftp_call(gate, "get", remote_path, sftp.get, remote_path, str(local_path)))
    await _fan_out(jobs)


# ── local → remote ───────────────────────────────────────────────────────────

def _is_remote_dir(sftp, remote_path: str) -> bool:
    try:
        return stat.S_ISDIR(sftp.stat(remote_path).st_mode or 0)
    except OSError:
        return False


def _mkdir_tolerant(sftp, remote_path: str):
    try:
        sftp.mkdir(remote_path)
    except OSError:
        # an already-present directory is fine
        if not _is_remote_dir(sftp, remote_path):
            raise


async def _upload_subdir(sftp, local_path: Path, remote_path: str, gate: asyncio.Semaphore):
    await _sftp_call(gate, "mkdir", remote_path, _mkdir_tolerant, sftp, remote_path)
    await upload_tree(sftp, local_path, remote_path, gate=gate)


async def upload_tree(sftp, local_dir, remote_dir: str, *,
                      gate: Optional[asyncio.Semaphore] = None):
    """
    Mirror local_dir into remote_dir. A single file is placed inside
    remote_dir under its own name.
    """
    gate = _make_gate(gate)
    local_dir = Path(local_dir)
    remote_dir = to_posix(remote_dir)

    if not local_dir.is_dir():
        remote_path = join_remote(remote_dir, local_dir.name)
        vlog(f"  [PUT] {remote_path}")
        await _sftp_call(gate, "put", remote_path, sftp.put, str(local_dir), remote_path)
        return

    try:
        entries = sorted(os.scandir(local_dir), key=lambda e: e.name)
    except OSError as exc:
        raise TransferError(f"listdir failed for {local_dir}: {exc}", path=str(local_dir)) from exc

    jobs = []
    for entry in entries:
        local_path = local_dir / entry.name
        remote_path = join_remote(remote_dir, entry.name)
        if entry.is_dir():
            jobs.append(_upload_subdir(sftp, local_path, remote_path, gate))
        else:
            vlog(f"  [PUT] {remote_path}")
            jobs.append(_sftp_call(gate, "put", remote_path, sftp.put, str(local_path), remote_path))
    await _fan_out(jobs)


async def upload(session, local_path, remote_dir: str):
    """Upload step: check both ends, then copy the tree over one sub-channel."""
    if not session.connected:
        raise PreconditionError("upload: ssh server not connected")
    local_path = Path(local_path)
    if not local_path.exists():
        raise PreconditionError(f"Local path not exists: {local_path}")
    if not await session.exists_directory(remote_dir):
        raise PreconditionError(f"Remote directory not exists: {remote_dir}")

    log(f"[upload] {local_path} → {to_posix(remote_dir)} …")
    async with session.sftp() as channel:
        await upload_tree(channel, local_path, remote_dir)
    log("[upload] done ✓")
