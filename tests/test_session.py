"""
Tests for RemoteSession and open_session.

Tests:
  - exists_directory: directory, file, missing, broken channel
  - execute: login shell wrapping, stderr-as-failure, exit code without stderr
  - execute: both output streams drained, a command that never exits times out
  - remove_recursive: idempotent, refuses empty paths
  - close: idempotent, leaves the session disconnected
  - open_session: connection options, TCP keep-alive, error mapping
"""
import socket
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import paramiko

from deployscript import config as _cfg
from deployscript.core.session import RemoteSession, join_commands, login_shell, open_session
from deployscript.errors import (
    AuthError, CommandError, ConnectError, ConnectTimeoutError, NetworkError, RemoteCommandError,
)
from deployscript.models import ConnectionSpec

from fakes import FakeSSHClient, RecordingSocket, write_tree


class SessionTestCase(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.root = Path(self.tmpdir.name)
        write_tree(self.root, {"srv/app/index.html": "<html/>", "srv/file.txt": "x"})
        self.client = FakeSSHClient(self.root)
        self.session = RemoteSession(self.client)

    def tearDown(self):
        self.tmpdir.cleanup()


class TestExistsDirectory(SessionTestCase):

    async def test_directory(self):
        self.assertTrue(await self.session.exists_directory("/srv/app"))

    async def test_backslash_path_is_normalized(self):
        self.assertTrue(await self.session.exists_directory("\\srv\\app"))

    async def test_regular_file_is_not_a_directory(self):
        self.assertFalse(await self.session.exists_directory("/srv/file.txt"))

    async def test_missing(self):
        self.assertFalse(await self.session.exists_directory("/srv/nope"))

    async def test_channel_failure_reads_as_missing(self):
        self.client.sftp_error = paramiko.SSHException("channel refused")
        self.assertFalse(await self.session.exists_directory("/srv/app"))

    async def test_sub_channel_is_closed(self):
        await self.session.exists_directory("/srv/app")
        await self.session.exists_directory("/srv/nope")
        self.assertEqual(len(self.client.sftp_clients), 2)
        self.assertEqual(self.client.open_channels, [])


class TestExecute(SessionTestCase):

    def test_join_commands(self):
        self.assertEqual(join_commands(["npm i", "pm2 restart app"]), "npm i && pm2 restart app")
        self.assertEqual(join_commands("ls"), "ls")

    def test_login_shell_quotes(self):
        self.assertEqual(login_shell("echo 'hi'"), "bash -l -c 'echo '\"'\"'hi'\"'\"''")

    async def test_commands_run_in_login_shell(self):
        self.client.responses["npm i && pm2 restart app"] = ("ok\n", "", 0)
        result = await self.session.execute(["npm i", "pm2 restart app"])
        self.assertEqual(self.client.commands, ["bash -l -c 'npm i && pm2 restart app'"])
        self.assertEqual(result.stdout, "ok\n")
        self.assertEqual(result.exit_code, 0)

    async def test_stderr_output_is_failure(self):
        """Anything on stderr fails the command, even with exit code 0."""
        self.client.responses["npm i"] = ("", "npm WARN deprecated\n", 0)
        with self.assertRaises(RemoteCommandError) as ctx:
            await self.session.execute(["npm i"])
        self.assertIn("npm WARN deprecated", ctx.exception.stderr)
        self.assertEqual(ctx.exception.exit_code, 0)
        self.assertEqual(ctx.exception.command, "npm i")

    async def test_nonzero_exit_without_stderr_is_success(self):
        self.client.responses["false"] = ("", "", 1)
        result = await self.session.execute("false")
        self.assertEqual(result.exit_code, 1)

    async def test_late_stderr_is_collected_without_eof(self):
        """Without an EOF signal, stderr that arrives after the exit status still counts."""
        self.client.eof_received = False
        self.client.late_stderr = b"late failure"
        with mock.patch.object(_cfg, "EXEC_FLUSH_GRACE", 0):
            with self.assertRaises(RemoteCommandError) as ctx:
                await self.session.execute("deploy")
        self.assertIn("late failure", ctx.exception.stderr)

    async def test_large_output_on_both_streams(self):
        """Neither stream is left unread while the other fills up."""
        out, err = "o" * 100_000, "e" * 100_000
        self.client.responses["build"] = (out, err, 0)
        with self.assertRaises(RemoteCommandError) as ctx:
            await self.session.execute("build")
        self.assertEqual(ctx.exception.stderr, err)
        channel = self.client.channels[-1]
        self.assertLessEqual(channel.max_chunk, _cfg.EXEC_READ_CHUNK)

        self.client.responses["build"] = (out, "", 0)
        result = await self.session.execute("build")
        self.assertEqual(result.stdout, out)

    async def test_command_that_never_exits_times_out(self):
        self.client.hang = True
        with mock.patch.object(_cfg, "OPERATION_TIMEOUT", 0.05), \
                mock.patch.object(_cfg, "EXEC_POLL_INTERVAL", 0.01):
            with self.assertRaises(RemoteCommandError) as ctx:
                await self.session.execute("tail -f log")
        self.assertIn("timed out", str(ctx.exception))
        self.assertEqual(ctx.exception.command, "tail -f log")

    async def test_exec_channel_failure_is_command_error(self):
        self.client.exec_error = paramiko.SSHException("no channel")
        with self.assertRaises(CommandError):
            await self.session.execute("ls")


class TestRemoveRecursive(SessionTestCase):

    async def test_removes_tree(self):
        await self.session.remove_recursive("/srv/app")
        self.assertFalse((self.root / "srv/app").exists())
        self.assertEqual(self.client.commands, ["rm -rf /srv/app"])

    async def test_missing_path_is_fine(self):
        await self.session.remove_recursive("/srv/nope")
        await self.session.remove_recursive("/srv/nope")

    async def test_refuses_root_and_empty(self):
        for path in ("", "/", "//"):
            with self.assertRaises(CommandError):
                await self.session.remove_recursive(path)
        self.assertEqual(self.client.commands, [])


class TestClose(SessionTestCase):

    async def test_close_is_idempotent(self):
        self.assertTrue(self.session.connected)
        await self.session.close()
        await self.session.close()
        self.assertFalse(self.session.connected)
        self.assertEqual(self.client.close_calls, 1)


class TestOpenSession(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.client = FakeSSHClient(Path(self.tmpdir.name))

    def tearDown(self):
        self.tmpdir.cleanup()

    async def _open(self, spec):
        return await open_session(spec, client_factory=lambda: self.client)

    async def test_password_login(self):
        spec = ConnectionSpec(host="example.com", username="deploy", password="pw")
        session = await self._open(spec)
        kw = self.client.connect_kwargs
        self.assertEqual(kw["hostname"], "example.com")
        self.assertEqual(kw["port"], 22)
        self.assertEqual(kw["username"], "deploy")
        self.assertEqual(kw["password"], "pw")
        self.assertEqual(kw["timeout"], _cfg.CONNECT_TIMEOUT)
        self.assertNotIn("key_filename", kw)
        self.assertIsInstance(self.client.policy, paramiko.AutoAddPolicy)
        self.assertEqual(self.client.transport.keepalive, _cfg.KEEPALIVE_INTERVAL)
        self.assertTrue(session.connected)
        self.assertIs(session.spec, spec)

    async def test_key_login(self):
        spec = ConnectionSpec(host="h", username="u", port=2222, private_key="/keys/id_rsa")
        await self._open(spec)
        self.assertEqual(self.client.connect_kwargs["key_filename"], "/keys/id_rsa")
        self.assertEqual(self.client.connect_kwargs["port"], 2222)
        self.assertNotIn("password", self.client.connect_kwargs)

    async def test_tcp_keepalive_options(self):
        sock = RecordingSocket()
        self.client.transport.sock = sock
        await self._open(ConnectionSpec(host="h", username="u", password="pw"))

        self.assertEqual(sock.options[(socket.SOL_SOCKET, socket.SO_KEEPALIVE)], 1)
        if hasattr(socket, "TCP_KEEPIDLE"):
            self.assertEqual(sock.options[(socket.IPPROTO_TCP, socket.TCP_KEEPIDLE)],
                             _cfg.KEEPALIVE_INTERVAL)
        if hasattr(socket, "TCP_KEEPINTVL"):
            self.assertEqual(sock.options[(socket.IPPROTO_TCP, socket.TCP_KEEPINTVL)],
                             _cfg.KEEPALIVE_INTERVAL)
        if hasattr(socket, "TCP_KEEPCNT"):
            self.assertEqual(sock.options[(socket.IPPROTO_TCP, socket.TCP_KEEPCNT)],
                             _cfg.KEEPALIVE_COUNT_MAX)

    async def test_error_mapping(self):
        spec = ConnectionSpec(host="h", username="u", password="pw")
        cases = [
            (paramiko.AuthenticationException("denied"), AuthError),
            (socket.timeout("timed out"), ConnectTimeoutError),
            (paramiko.SSHException("banner"), NetworkError),
            (ConnectionRefusedError(111, "refused"), NetworkError),
        ]
        for raised, expected in cases:
            with self.subTest(raised=type(raised).__name__):
                self.client = FakeSSHClient(Path(self.tmpdir.name))
                self.client.connect_error = raised
                with self.assertRaises(expected) as ctx:
                    await self._open(spec)
                self.assertIsInstance(ctx.exception, ConnectError)
                self.assertTrue(self.client.closed)


if __name__ == "__main__":
    unittest.main()
