"""
Exception types raised by deployscript
"""
from typing import Optional


class DeployError(RuntimeError):
    """Base class for every failure the deploy engine reports."""


# ── session establishment ────────────────────────────────────────────────────

class ConnectError(DeployError):
    """The SSH session could not be opened."""


class AuthError(ConnectError):
    pass


class NetworkError(ConnectError):
    pass


class ConnectTimeoutError(ConnectError, TimeoutError):
    pass


# ── per-step failures ────────────────────────────────────────────────────────

class PreconditionError(DeployError):
    """A local path or remote directory is missing, or the session is down."""


class TransferError(DeployError):
    """A single file or directory operation failed during a tree copy."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class CommandError(DeployError):
    """The remote exec channel could not be opened."""


class RemoteCommandError(DeployError):
    """The remote command ran but wrote to its error stream."""

    def __init__(self, stderr: str, exit_code: Optional[int] = None, command: str = ""):
        super().__init__(stderr.strip() or f"remote command exited {exit_code}")
        self.stderr = stderr
        self.exit_code = exit_code
        self.command = command


class BackupError(DeployError):
    """Snapshot, compression or snapshot cleanup failed."""


class ConfigError(DeployError):
    """Config file missing, unreadable or invalid."""
