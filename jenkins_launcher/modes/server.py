import hmac
import logging
import os
import socket
import threading
import time
from pathlib import Path
from typing import List, Optional, Tuple

import paramiko

from ..errors import LauncherError
from .base import Mode

logger = logging.getLogger("launcher.ssh-server")


def key_search_paths() -> List[Tuple[Path, type]]:
    """Candidate host key files, in the order they are tried."""
    home = Path(os.path.expanduser("~"))
    candidates = []
    for directory in (Path("."), home / ".ssh"):
        candidates.append((directory / "id_rsa", paramiko.RSAKey))
        candidates.append((directory / "id_ecdsa", paramiko.ECDSAKey))
        candidates.append((directory / "id_ed25519", paramiko.Ed25519Key))
    return candidates


class ShellOnlyServer(paramiko.ServerInterface):
    """Accepts password logins for one user and plain shell sessions only."""

    # Slows down password checks to make brute force attacks more difficult.
    AUTH_DELAY = 1.0

    def __init__(self, username: str, password: str):
        self.username = username
        self.password = password

    def get_allowed_auths(self, username):
        return "password"

    def check_auth_password(self, username, password):
        time.sleep(self.AUTH_DELAY)

        if hmac.compare_digest(username, self.username) and hmac.compare_digest(password, self.password):
            logger.info(f"Authentication succeeded '{username}' using 'password'")
            return paramiko.AUTH_SUCCESSFUL

        logger.warning(f"Failed attempt to authenticate '{username}' using 'password'")
        return paramiko.AUTH_FAILED

    def check_channel_request(self, kind, chanid):
        if kind == "session":
            return paramiko.OPEN_SUCCEEDED
        return paramiko.OPEN_FAILED_ADMINISTRATIVELY_PROHIBITED

    def check_channel_pty_request(self, channel, term, width, height, pixelwidth, pixelheight, modes):
        return True

    def check_channel_shell_request(self, channel):
        return True

    def check_channel_exec_request(self, channel, command):
        # Only the default shell is available.
        return False


class ServerMode(Mode):
    """Run mode 'ssh-server': an SSH endpoint that logs what is typed into its shell."""

    name = "ssh-server"

    ACCEPT_TIMEOUT = 0.5
    PROMPT = b"> "

    def __init__(self):
        super().__init__()
        self._host_key: Optional[paramiko.PKey] = None

    @staticmethod
    def load_host_key() -> paramiko.PKey:
        errors = []
        for path, key_class in key_search_paths():
            if not path.is_file():
                continue
            try:
                return key_class.from_private_key_file(str(path))
            except (paramiko.SSHException, OSError, ValueError) as e:
                errors.append(f"{path}: {e}")

        details = f" ({'; '.join(errors)})" if errors else ""
        raise LauncherError(f"No usable SSH host key found in {', '.join(str(p) for p, _ in key_search_paths())}{details}")

    def start(self, context) -> None:
        self._host_key = self.load_host_key()
        super().start(context)

    def execute(self, context) -> None:
        config = context.config
        address = (config.ssh_listen_address, config.ssh_listen_port)

        logger.info(f"Starting to listen @ {address[0]}:{address[1]}")
        try:
            listener = socket.create_server(address)
        except OSError as e:
            logger.error(f"Failed to listen @ {address[0]}:{address[1]}: {e}")
            return

        with listener:
            listener.settimeout(self.ACCEPT_TIMEOUT)
            if not self._set_started():
                return

            while not self.wait_for_stop_request(0):
                try:
                    connection, peer = listener.accept()
                except socket.timeout:
                    continue
                except OSError:
                    logger.info("Failed to accept next incoming SSH connection, assuming connection was closed.")
                    return

                threading.Thread(
                    target=self.handle_connection, args=(connection, peer, config),
                    name=f"ssh-server-{peer[0]}", daemon=True,
                ).start()

    def handle_connection(self, connection: socket.socket, peer, config) -> None:
        transport = paramiko.Transport(connection)
        try:
            transport.add_server_key(self._host_key)
            transport.start_server(server=ShellOnlyServer(config.ssh_username, config.ssh_password))

            while transport.is_active() and not self.wait_for_stop_request(0):
                if (channel := transport.accept(self.ACCEPT_TIMEOUT)) is not None:
                    threading.Thread(target=self.serve_shell, args=(channel,), daemon=True).start()
        except (paramiko.SSHException, EOFError, OSError) as e:
            logger.warning(f"SSH session with {peer[0]} failed: {e}")
        finally:
            transport.close()

    def serve_shell(self, channel: paramiko.Channel) -> None:
        with channel:
            channel.send(self.PROMPT)
            for raw in channel.makefile("rb"):
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                logger.info(f"INPUT-SSH: {line}")
                channel.send(self.PROMPT)
