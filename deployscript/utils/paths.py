"""
Path helpers shared by the transfer, backup and clean operations
"""
from datetime import datetime
from pathlib import PurePosixPath
from typing import Callable, Optional


def to_posix(path) -> str:
    """SFTP only understands forward slashes; normalize before crossing the wire."""
    return str(path).replace("\\", "/")


def join_remote(base, name: str) -> str:
    """Join a remote directory and an entry name as a POSIX path."""
    return str(PurePosixPath(to_posix(base)) / to_posix(name))


def timestamp_with_underline(clock: Optional[Callable[[], datetime]] = None) -> str:
    """Current local time as YYYY_MM_DD_HH_MM_SS."""
    now = (clock or datetime.now)()
    return now.strftime("%Y_%m_%d_%H_%M_%S")
