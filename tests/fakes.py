"""
In-memory stand-ins for paramiko's SSHClient / SFTPClient

The "remote" filesystem is a local temp directory: remote path /var/www/app
maps to <root>/var/www/app. Backslash paths are rejected the way a real SFTP
server rejects them.
"""
import os
import shlex
import shutil
import threading
import time
from pathlib import Path

import paramiko


def write_tree(base: Path, files: dict):
    """Create files under base from {"rel/path": "content" | b"bytes"}."""
    for rel, content in files.items():
        path = base / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content, encoding="utf-8")


def read_tree(base: Path) -> dict:
    """{rel_posix: bytes} for every file under base."""
    return {
        p.relative_to(base).as_posix(): p.read_bytes()
        for p in sorted(base.rglob("*")) if p.is_file()
    }


def _as_bytes(data) -> bytes:
    return data if isinstance(data, bytes) else data.encode("utf-8")


def list_dirs(base: Path) -> set:
    return {p.relative_to(base).as_posix() for p in base.rglob("*") if p.is_dir()}


class FakeChannel:
    """
    Buffered exec channel. late_stderr only shows up once the exit status has
    been read, like output that trails a server's exit-status message.
    hang keeps the command running forever.
    """

    def __init__(self, exit_code=0, out=b"", err=b"", eof_received=True,
                 late_stderr=b"", hang=False):
        self._exit_code = exit_code
        self._out = out
        self._err = err
        self._late_stderr = late_stderr
        self._exit_read = False
        self.eof_received = eof_received
        self.hang = hang
        self.timeout = None
        self.max_chunk = 0

    def _take(self, attr, n):
        buf = getattr(self, attr)
        setattr(self, attr, buf[n:])
        self.max_chunk = max(self.max_chunk, min(n, len(buf)))
        return buf[:n]

    def recv_ready(self):
        return bool(self._out)

    def recv(self, n):
        return self._take("_out", n)

    def recv_stderr_ready(self):
        if self._exit_read and self._late_stderr:
            self._err, self._late_stderr = self._err + self._late_stderr, b""
        return bool(self._err)

    def recv_stderr(self, n):
        return self._take("_err", n)

    def exit_status_ready(self):
        return not self.hang

    def recv_exit_status(self):
        self._exit_read = True
        return self._exit_code

    def settimeout(self, timeout):
        self.timeout = timeout


class FakeStream:
    def __init__(self, channel: FakeChannel):
        self.channel = channel


class RecordingSocket:
    """Socket stand-in that remembers every setsockopt call."""

    def __init__(self):
        self.options = {}

    def setsockopt(self, level, option, value):
        self.options[(level, option)] = value


class FakeSFTPClient:
    def __init__(self, owner: "FakeSSHClient"):
        self._owner = owner
        self.closed = False
        self._channel = FakeChannel()

    # ── helpers ────────────────────────────────────────────────────────────

    def _local(self, remote: str) -> Path:
        if "\\" in remote:
            raise FileNotFoundError(2, "No such file", remote)
        return self._owner.root / remote.lstrip("/")

    def _op(self, remote: str):
        owner = self._owner
        with owner.lock:
            owner.active += 1
            owner.max_active = max(owner.max_active, owner.active)
            owner.calls.append(remote)
        try:
            if owner.delay:
                time.sleep(owner.delay)
            if remote in owner.fail_on:
                raise PermissionError(13, "Permission denied", remote)
        finally:
            with owner.lock:
                owner.active -= 1

    # ── paramiko.SFTPClient surface ────────────────────────────────────────

    def get_channel(self):
        return self._channel

    def stat(self, remote):
        return paramiko.SFTPAttributes.from_stat(os.stat(self._local(remote)))

    def listdir_attr(self, remote):
        self._op(remote)
        local = self._local(remote)
        return [
            paramiko.SFTPAttributes.from_stat(os.lstat(local / name), filename=name)
            for name in sorted(os.listdir(local))
        ]

    def mkdir(self, remote, mode=0o777):
        self._op(remote)
        if self._owner.mkdir_error is not None:
            raise self._owner.mkdir_error
        os.mkdir(self._local(remote))

    def get(self, remote, local):
        self._op(remote)
        shutil.copyfile(self._local(remote), local)

    def put(self, local, remote):
        self._op(remote)
        target = self._local(remote)
        if not target.parent.is_dir():
            raise FileNotFoundError(2, "No such file", remote)
        shutil.copyfile(local, target)
        return paramiko.SFTPAttributes.from_stat(os.stat(target))

    def close(self):
        self.closed = True


class FakeTransport:
    def __init__(self, owner: "FakeSSHClient"):
        self._owner = owner
        self.keepalive = None
        self.sock = None

    def is_active(self):
        return self._owner.connected_ok and not self._owner.closed

    def set_keepalive(self, interval):
        self.keepalive = interval


class FakeSSHClient:
    """
    responses maps an inner login-shell command to (stdout, stderr, exit_code).
    """

    def __init__(self, root: Path, responses=None, fail_on=None, delay=0.0):
        self.root = Path(root)
        self.responses = responses or {}
        self.fail_on = set(fail_on or ())
        self.delay = delay
        self.connect_error = None
        self.exec_error = None
        self.sftp_error = None
        self.mkdir_error = None
        self.eof_received = True
        self.late_stderr = b""
        self.hang = False
        self.channels = []
        self.connect_kwargs = None
        self.connected_ok = True
        self.closed = False
        self.close_calls = 0
        self.commands = []
        self.calls = []
        self.sftp_clients = []
        self.lock = threading.Lock()
        self.active = 0
        self.max_active = 0
        self.transport = FakeTransport(self)

    def set_missing_host_key_policy(self, policy):
        self.policy = policy

    def connect(self, **kwargs):
        self.connect_kwargs = kwargs
        if self.connect_error is not None:
            self.connected_ok = False
            raise self.connect_error

    def get_transport(self):
        return self.transport

    def open_sftp(self):
        if self.sftp_error is not None:
            raise self.sftp_error
        client = FakeSFTPClient(self)
        self.sftp_clients.append(client)
        return client

    def exec_command(self, command, timeout=None):
        if self.exec_error is not None:
            raise self.exec_error
        self.commands.append(command)
        argv = shlex.split(command)
        out, err, rc = "", "", 0
        if argv[:2] == ["rm", "-rf"]:
            for target in argv[2:]:
                local = self.root / target.lstrip("/")
                if local.is_dir():
                    shutil.rmtree(local)
                elif local.exists():
                    local.unlink()
        elif argv[:3] == ["bash", "-l", "-c"]:
            out, err, rc = self.responses.get(argv[3], ("", "", 0))
        channel = FakeChannel(rc, out=_as_bytes(out), err=_as_bytes(err),
                              eof_received=self.eof_received,
                              late_stderr=self.late_stderr, hang=self.hang)
        self.channels.append(channel)
        return None, FakeStream(channel), FakeStream(channel)

    def close(self):
        self.close_calls += 1
        self.closed = True

    @property
    def open_channels(self):
        return [c for c in self.sftp_clients if not c.closed]
