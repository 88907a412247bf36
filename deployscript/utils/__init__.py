"""Utilities (logging, paths)"""
from .logging import log, vlog, warn, error, echo, set_verbose, set_log_file
from .paths import to_posix, join_remote, timestamp_with_underline

__all__ = [
    "log", "vlog", "warn", "error", "echo", "set_verbose", "set_log_file",
    "to_posix", "join_remote", "timestamp_with_underline",
]
