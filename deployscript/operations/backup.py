"""
Snapshot a remote directory into a local zip archive
"""
import asyncio
import itertools
import shutil
import zipfile
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional

from ..errors import BackupError, DeployError, PreconditionError
from ..models import BackupArtifact
from ..utils.logging import log, vlog
from ..utils.paths import timestamp_with_underline, to_posix
from .transfer import download_tree


def _reserve_snapshot(dest: Path, stamp: str) -> Path:
    """
    Create a fresh snapshot directory. Neither it nor its archive may exist
    yet; a same-second clash gets a _1, _2, … suffix.
    """
    dest.mkdir(parents=True, exist_ok=True)
    for n in itertools.count():
        name = f"backup_{stamp}" if n == 0 else f"backup_{stamp}_{n}"
        snapshot = dest / name
        if snapshot.with_name(name + ".zip").exists():
            continue
        try:
            snapshot.mkdir()
        except FileExistsError:
            continue
        return snapshot


def _zip_dir(snapshot: Path, archive: Path, created: List[Path]):
    """Deflate at level 9; entries live under the snapshot's own name."""
    with archive.open("xb") as raw:
        created.append(archive)
        with zipfile.ZipFile(raw, "w", compression=zipfile.ZIP_DEFLATED,
                             compresslevel=9, strict_timestamps=False) as zf:
            for path in sorted(snapshot.rglob("*")):
                arcname = Path(snapshot.name) / path.relative_to(snapshot)
                zf.write(path, arcname.as_posix())


def _discard(created: List[Path]):
    """Remove only what this backup call created."""
    for path in reversed(created):
        if path.is_dir():
            shutil.rmtree(path, ignore_errors=True)
            continue
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            vlog(f"[backup] could not remove partial archive {path}: {exc}")


async def backup(session, remote_source_dir: str, local_dest_dir,
                 *, clock: Optional[Callable[[], datetime]] = None) -> BackupArtifact:
    """
    Download remote_source_dir to <local_dest_dir>/backup_<timestamp>, zip it to
    <snapshot>.zip beside it and delete the snapshot. On success only the
    archive remains; an existing archive is never overwritten. The session is
    borrowed, never closed here.
    """
    if not session.connected:
        raise PreconditionError("backup: ssh server not connected")
    remote = to_posix(remote_source_dir)
    if not await session.exists_directory(remote):
        raise PreconditionError(f"Remote directory not exists: {remote}")

    created: List[Path] = []
    try:
        snapshot = _reserve_snapshot(Path(local_dest_dir), timestamp_with_underline(clock))
        created.append(snapshot)
        archive = snapshot.with_name(snapshot.name + ".zip")
        log(f"[backup] {remote} → {archive} …")
        async with session.sftp() as channel:
            log("[backup] downloading files …")
            await download_tree(channel, remote, snapshot)
        log("[backup] compressing …")
        await asyncio.to_thread(_zip_dir, snapshot, archive, created)
        await asyncio.to_thread(shutil.rmtree, snapshot)
    except (DeployError, OSError) as exc:
        _discard(created)
        raise BackupError(f"Backup failed: {exc}") from exc

    log("[backup] done ✓")
    return BackupArtifact(archive=archive, snapshot_name=snapshot.name)
