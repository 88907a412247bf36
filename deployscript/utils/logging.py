"""
Console and log-file output for deployscript
"""
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

_verbose = False
_log_file: Optional[Path] = None


def set_verbose(verbose: bool):
    """Set the verbose flag"""
    global _verbose
    _verbose = verbose


def set_log_file(path: Optional[Path]):
    """Mirror every emitted line into *path* (append mode). None disables it."""
    global _log_file
    _log_file = Path(path) if path is not None else None
    if _log_file is not None:
        _log_file.parent.mkdir(parents=True, exist_ok=True)


def _emit(line: str, stream=None):
    print(line, file=stream or sys.stdout, flush=True)
    if _log_file is not None:
        with _log_file.open("a", encoding="utf-8") as f:
            f.write(line + "\n")


def log(msg: str):
    """Log a message with timestamp"""
    ts = datetime.now().strftime("%H:%M:%S")
    _emit(f"[{ts}] {msg}")


def vlog(msg: str):
    """Log a verbose message (only if verbose mode is enabled)"""
    if _verbose:
        log(msg)


def warn(msg: str):
    """Log a warning message"""
    log(f"⚠  {msg}")


def error(msg: str):
    """Print an error to stderr (and the log file, if any)"""
    ts = datetime.now().strftime("%H:%M:%S")
    _emit(f"[{ts}] ✗ {msg}", stream=sys.stderr)


def echo(msg: str = ""):
    """Print a line as-is (banners, summaries)"""
    _emit(msg)
