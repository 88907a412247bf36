"""
One authenticated SSH connection shared by every step of a deploy run
"""
import asyncio
import shlex
import socket
import stat
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, Union

import paramiko

from .. import config as _cfg
from ..errors import AuthError, CommandError, ConnectTimeoutError, NetworkError, RemoteCommandError
from ..models import ConnectionSpec
from ..utils.logging import log, vlog
from ..utils.paths import to_posix


@dataclass
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int


def join_commands(commands: Union[str, Sequence[str]]) -> str:
    """A failing command short-circuits the rest."""
    if isinstance(commands, str):
        return commands
    return " && ".join(c for c in commands if c)


def login_shell(command: str) -> str:
    """Run under `bash -l` so the remote profile is sourced."""
    return f"bash -l -c {shlex.quote(command)}"


def _enable_tcp_keepalive(sock):
    """Declare the peer dead after KEEPALIVE_COUNT_MAX unanswered keep-alives."""
    if sock is None or not hasattr(sock, "setsockopt"):
        return
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
        if hasattr(socket, "TCP_KEEPIDLE"):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, _cfg.KEEPALIVE_INTERVAL)
        if hasattr(socket, "TCP_KEEPINTVL"):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, _cfg.KEEPALIVE_INTERVAL)
        if hasattr(socket, "TCP_KEEPCNT"):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_KEEPCNT, _cfg.KEEPALIVE_COUNT_MAX)
    except OSError as exc:
        vlog(f"[SSH] TCP keep-alive not available: {exc}")


class RemoteSession:
    """
    Wraps a connected paramiko SSHClient.
    Blocking paramiko calls run in worker threads so every network round-trip
    is awaitable. Sub-components borrow the session; only the orchestrator
    closes it.
    """

    def __init__(self, client: paramiko.SSHClient, spec: Optional[ConnectionSpec] = None):
        self._client = client
        self._closed = False
        self.spec = spec

    # ── state ──────────────────────────────────────────────────────────────

    @property
    def connected(self) -> bool:
        if self._closed:
            return False
        try:
            transport = self._client.get_transport()
            return bool(transport and transport.is_active())
        except Exception:
            return False

    async def close(self):
        if self._closed:
            return
        self._closed = True
        await asyncio.to_thread(self._client.close)
        log("[SSH] disconnected.")

    # ── sftp ───────────────────────────────────────────────────────────────

    def _open_sftp(self) -> paramiko.SFTPClient:
        sftp = self._client.open_sftp()
        if _cfg.OPERATION_TIMEOUT:
            sftp.get_channel().settimeout(_cfg.OPERATION_TIMEOUT)
        return sftp

    @asynccontextmanager
    async def sftp(self):
        """A short-lived file-transfer sub-channel, always closed afterwards."""
        try:
            channel = await asyncio.to_thread(self._open_sftp)
        except (paramiko.SSHException, OSError) as exc:
            raise NetworkError(f"could not open SFTP channel: {exc}") from exc
        try:
            yield channel
        finally:
            await asyncio.to_thread(channel.close)

    async def exists_directory(self, path: str) -> bool:
        """
        False on any stat failure. A missing directory and a transient error
        look the same to callers; the cause is only visible in verbose output.
        """
        remote = to_posix(path)
        try:
            async with self.sftp() as channel:
                attrs = await asyncio.to_thread(channel.stat, remote)
        except Exception as exc:
            vlog(f"[SSH] stat {remote} failed: {exc}")
            return False
        return stat.S_ISDIR(attrs.st_mode or 0)

    # ── exec ───────────────────────────────────────────────────────────────

    def _exec_sync(self, command: str) -> CommandResult:
        try:
            _, stdout, _ = self._client.exec_command(command, timeout=_cfg.OPERATION_TIMEOUT)
        except (paramiko.SSHException, OSError) as exc:
            raise CommandError(f"could not start remote command {command!r}: {exc}") from exc
        channel = stdout.channel
        timeout = _cfg.OPERATION_TIMEOUT
        deadline = time.monotonic() + timeout if timeout else None
        out, err = bytearray(), bytearray()

        # drain both streams together; a full stderr window must not stall stdout
        while True:
            busy = False
            if channel.recv_ready():
                out += channel.recv(_cfg.EXEC_READ_CHUNK)
                busy = True
            if channel.recv_stderr_ready():
                err += channel.recv_stderr(_cfg.EXEC_READ_CHUNK)
                busy = True
            if busy:
                continue
            if channel.exit_status_ready():
                break
            if deadline is not None and time.monotonic() > deadline:
                raise RemoteCommandError(f"timed out after {timeout}s", command=command)
            time.sleep(_cfg.EXEC_POLL_INTERVAL)

        rc = channel.recv_exit_status()
        if not channel.eof_received:
            # no end-of-stream seen: give buffered output a moment to land
            time.sleep(_cfg.EXEC_FLUSH_GRACE)
            while channel.recv_ready():
                out += channel.recv(_cfg.EXEC_READ_CHUNK)
            while channel.recv_stderr_ready():
                err += channel.recv_stderr(_cfg.EXEC_READ_CHUNK)
        return CommandResult(stdout=out.decode("utf-8", errors="replace"),
                             stderr=err.decode("utf-8", errors="replace"), exit_code=rc)

    async def remove_recursive(self, path: str):
        """rm -rf; succeeds even when *path* does not exist."""
        remote = to_posix(path).rstrip("/")
        if not remote:
            raise CommandError(f"refusing to remove {path!r}")
        result = await asyncio.to_thread(self._exec_sync, f"rm -rf {shlex.quote(remote)}")
        vlog(f"[SSH] rm -rf {remote} exited {result.exit_code}")

    async def execute(self, commands: Union[str, Sequence[str]]) -> CommandResult:
        """
        Run commands joined with && in a login shell.
        Anything written to stderr counts as failure, whatever the exit code.
        """
        joined = join_commands(commands)
        result = await asyncio.to_thread(self._exec_sync, login_shell(joined))
        if result.stderr.strip():
            raise RemoteCommandError(result.stderr, exit_code=result.exit_code, command=joined)
        return result


# ── connection ─────────────────────────────────────────────────────────────

def _connect_sync(spec: ConnectionSpec, client_factory: Callable) -> paramiko.SSHClient:
    client = client_factory()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    kw: dict = dict(hostname=spec.host, port=spec.port, username=spec.username,
                    timeout=_cfg.CONNECT_TIMEOUT, banner_timeout=_cfg.CONNECT_TIMEOUT,
                    auth_timeout=_cfg.CONNECT_TIMEOUT)
    if spec.private_key:
        kw["key_filename"] = spec.private_key
    if spec.password:
        kw["password"] = spec.password

    try:
        client.connect(**kw)
    except paramiko.AuthenticationException as exc:
        client.close()
        raise AuthError(f"authentication failed for {spec.describe()}: {exc}") from exc
    except socket.timeout as exc:
        client.close()
        raise ConnectTimeoutError(
            f"timed out after {_cfg.CONNECT_TIMEOUT}s connecting to {spec.describe()}") from exc
    except (paramiko.SSHException, OSError) as exc:
        client.close()
        raise NetworkError(f"could not connect to {spec.describe()}: {exc}") from exc

    transport = client.get_transport()
    transport.set_keepalive(_cfg.KEEPALIVE_INTERVAL)
    _enable_tcp_keepalive(getattr(transport, "sock", None))
    return client


async def open_session(spec: ConnectionSpec,
                       client_factory: Callable = paramiko.SSHClient) -> RemoteSession:
    """Authenticate and return a connected RemoteSession."""
    log(f"[SSH] connecting to {spec.describe()} …")
    client = await asyncio.to_thread(_connect_sync, spec, client_factory)
    log("[SSH] connected ✓")
    return RemoteSession(client, spec)
