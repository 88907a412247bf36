"""
Data types shared across the deploy engine
"""
import asyncio
import inspect
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Sequence

from .config import DEFAULT_SSH_PORT

CompletionCallback = Callable[[Any], Awaitable[None]]


@dataclass(frozen=True)
class ConnectionSpec:
    """Where and how to log in. Exactly one remote endpoint per run."""

    host: str
    username: str
    port: int = DEFAULT_SSH_PORT
    password: Optional[str] = None
    private_key: Optional[str] = None

    @property
    def has_secret(self) -> bool:
        return bool(self.password or self.private_key)

    def describe(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"


@dataclass(frozen=True)
class WorkingContext:
    """The directories relative paths are resolved against."""

    cwd: Path
    home: Path

    @classmethod
    def from_environment(cls) -> "WorkingContext":
        return cls(cwd=Path.cwd(), home=Path.home())

    def resolve(self, path) -> Path:
        raw = str(path)
        if raw == "~" or raw.startswith("~/") or raw.startswith("~\\"):
            candidate = self.home / raw[2:] if len(raw) > 1 else self.home
        else:
            candidate = Path(raw)
            if not candidate.is_absolute():
                candidate = self.cwd / candidate
        return Path(os.path.normpath(str(candidate)))


def as_async_callback(fn: Optional[Callable]) -> Optional[CompletionCallback]:
    """
    Collapse a sync-or-async completion hook into one async callable.
    Plain functions run inline; a returned awaitable is awaited too.
    """
    if fn is None or asyncio.iscoroutinefunction(fn):
        return fn

    async def _hook(session):
        result = fn(session)
        if inspect.isawaitable(result):
            await result

    _hook.__name__ = getattr(fn, "__name__", "on_completed")
    return _hook


@dataclass(frozen=True)
class TaskSpec:
    """One independent unit of deploy work."""

    local_path: str
    remote_dir: str
    name: Optional[str] = None
    disabled: bool = False
    backup_dir: Optional[str] = None
    auto_backup: bool = True
    auto_clean: bool = False
    remote_commands: Sequence[str] = ()
    on_completed: Optional[Callable] = None

    def __post_init__(self) -> None:
        commands = self.remote_commands
        if isinstance(commands, str):
            commands = [commands]
        object.__setattr__(self, "remote_commands", tuple(c for c in (commands or ()) if c))
        object.__setattr__(self, "on_completed", as_async_callback(self.on_completed))

    @property
    def label(self) -> str:
        return self.name or self.remote_dir


@dataclass(frozen=True)
class BackupArtifact:
    archive: Path
    snapshot_name: str


@dataclass
class TaskResult:
    task: TaskSpec
    attempted: bool = False
    environment_ready: bool = False
    backup_done: bool = False
    clean_done: bool = False
    upload_done: bool = False
    commands_error: Optional[Exception] = None
    callback_ran: bool = False
    callback_error: Optional[Exception] = None
    archive: Optional[Path] = None

    @property
    def skipped(self) -> bool:
        return self.attempted and not self.environment_ready


@dataclass
class RunReport:
    results: list = field(default_factory=list)

    @property
    def skipped(self) -> list:
        return [r for r in self.results if r.skipped]

    @property
    def completed(self) -> list:
        return [r for r in self.results if r.upload_done]

    @property
    def ok(self) -> bool:
        return all(r.upload_done and r.commands_error is None and r.callback_error is None
                   for r in self.results)


@dataclass
class DeployConfig:
    """A loaded, validated config file."""

    host: str
    username: str
    port: int = DEFAULT_SSH_PORT
    password: Optional[str] = None
    private_key: Optional[str] = None
    tasks: list = field(default_factory=list)
    logger: bool = False
    log_file: Optional[str] = None
    transfer_concurrency: Optional[int] = None
    operation_timeout: Optional[float] = None

    def connection(self, context: Optional[WorkingContext] = None) -> ConnectionSpec:
        key = self.private_key
        if key and context is not None:
            key = str(context.resolve(key))
        return ConnectionSpec(host=self.host, port=self.port, username=self.username,
                              password=self.password, private_key=key)
