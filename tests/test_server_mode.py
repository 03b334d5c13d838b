#!/usr/bin/env python3
import io
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

import paramiko

# Import from project root
sys.path.insert(0, str(Path(__file__).parent.parent))
from jenkins_launcher.errors import LauncherError
from jenkins_launcher.modes.base import Status
from jenkins_launcher.modes.server import ServerMode, ShellOnlyServer


class TestShellOnlyServer(unittest.TestCase):
    def setUp(self):
        self.server = ShellOnlyServer("ssh", "changeit")

    @patch('jenkins_launcher.modes.server.time.sleep')
    def test_password_auth(self, mock_sleep):
        """Only the configured user and password are accepted, each attempt is delayed"""
        self.assertEqual(self.server.check_auth_password("ssh", "changeit"), paramiko.AUTH_SUCCESSFUL)
        with self.assertLogs("launcher.ssh-server", level="WARNING"):
            self.assertEqual(self.server.check_auth_password("ssh", "wrong"), paramiko.AUTH_FAILED)
            self.assertEqual(self.server.check_auth_password("root", "changeit"), paramiko.AUTH_FAILED)
        self.assertEqual(mock_sleep.call_count, 3)

    def test_only_password_offered(self):
        self.assertEqual(self.server.get_allowed_auths("ssh"), "password")

    def test_channel_kinds(self):
        self.assertEqual(self.server.check_channel_request("session", 1), paramiko.OPEN_SUCCEEDED)
        self.assertEqual(self.server.check_channel_request("direct-tcpip", 2),
                         paramiko.OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED)

    def test_shell_but_no_exec(self):
        self.assertTrue(self.server.check_channel_shell_request(MagicMock()))
        self.assertFalse(self.server.check_channel_exec_request(MagicMock(), b"ls"))


class TestServerMode(unittest.TestCase):
    def test_missing_host_key(self):
        """Starting without any host key fails before the mode leaves NONE"""
        with tempfile.TemporaryDirectory() as tmp:
            candidates = [(Path(tmp) / "id_rsa", paramiko.RSAKey)]
            with patch('jenkins_launcher.modes.server.key_search_paths', return_value=candidates):
                mode = ServerMode()
                with self.assertRaises(LauncherError):
                    mode.start(MagicMock())

        self.assertEqual(mode.status, Status.NONE)

    def test_host_key_loaded(self):
        key = paramiko.RSAKey.generate(1024)
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "id_rsa"
            key.write_private_key_file(str(path))
            with patch('jenkins_launcher.modes.server.key_search_paths', return_value=[(path, paramiko.RSAKey)]):
                loaded = ServerMode.load_host_key()

        self.assertEqual(loaded.get_fingerprint(), key.get_fingerprint())

    def test_shell_logs_input(self):
        """Every line typed into the shell is logged"""
        channel = MagicMock()
        channel.__enter__.return_value = channel
        channel.makefile.return_value = io.BytesIO(b"hello\r\nworld\n")

        with self.assertLogs("launcher.ssh-server", level="INFO") as cm:
            ServerMode().serve_shell(channel)

        self.assertEqual(cm.output, [
            "INFO:launcher.ssh-server:INPUT-SSH: hello",
            "INFO:launcher.ssh-server:INPUT-SSH: world",
        ])
        self.assertEqual(channel.send.call_count, 3)


if __name__ == '__main__':
    unittest.main()
