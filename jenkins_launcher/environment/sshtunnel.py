"""
SSH tunnel between the node and the Jenkins server.

While the client mode runs, the tunnel provides two local listeners: one that
forwards to the Jenkins HTTP(S) port and one that forwards to the JNLP port.
This is the same as "ssh -L $ANY-PORT:jenkins-host:$HTTP-PORT -L $ANY-PORT:jenkins-host:$JNLP-PORT".

The tunnel is watched by two fixed-rate heartbeat tasks sharing one interval:
the probe requests the node status through the tunnel and records the last
tick it succeeded at, the watchdog advances the expected tick half an interval
later. When both drift apart by more than one tick the tunnel is considered
dead and the mode is restarted.
"""

import hashlib
import logging
import re
import socket
import threading
from enum import IntEnum
from typing import List, Optional, Tuple
from urllib.parse import urlparse, urlunparse
from xml.sax.saxutils import escape

import paramiko

from ..atomic import AtomicCounter, AtomicFlag
from ..errors import JenkinsError
from ..modes.base import Status
from ..scheduling import schedule
from .base import Preparer

logger = logging.getLogger("launcher.ssh-tunnel")

LOOPBACK = "127.0.0.1"
BUFFER_SIZE = 32 * 1024

TUNNEL_PATTERN = re.compile(r'(<tunnel>)(.*?)(</tunnel>)', re.IGNORECASE | re.DOTALL)
SINGLE_LAUNCHER_PATTERN = re.compile(r'(<launcher[^>]+?)(/>)', re.IGNORECASE)
LAUNCHER_END_PATTERN = re.compile(r'(</launcher>)', re.IGNORECASE)


class TunnelState(IntEnum):
    IDLE = 0
    CONNECTING = 1
    CONNECTED = 2
    TEARING_DOWN = 3


def http_target(url: str) -> Tuple[str, int]:
    """Returns (host, port) of the given URL, using the scheme's default port when missing."""
    parsed = urlparse(url)
    host = parsed.hostname or "localhost"
    port = parsed.port or (443 if parsed.scheme.lower() == "https" else 80)
    return host, port


def format_http_host_and_port(url: str) -> str:
    """Returns 'host:port' for the given URL, e.g. 'http://[::1]' -> '[::1]:80'."""
    host, port = http_target(url)
    if ":" in host:
        host = f"[{host}]"
    return f"{host}:{port}"


def format_host_fingerprint(key: paramiko.PKey) -> str:
    """Returns the MD5 fingerprint of the public key, as the OpenSSH client shows it."""
    digest = hashlib.md5(key.asbytes()).hexdigest()
    return ":".join(digest[i:i + 2] for i in range(0, len(digest), 2))


def update_or_add_tunnel_address(config_xml: str, host_and_port: str) -> str:
    """Updates or adds <tunnel> within <launcher> of a Jenkins node config."""
    value = escape(host_and_port)

    updated = TUNNEL_PATTERN.sub(lambda m: f"{m.group(1)}{value}{m.group(3)}", config_xml)
    if updated == config_xml:
        updated = SINGLE_LAUNCHER_PATTERN.sub(
            lambda m: f"{m.group(1)}>\n    <tunnel>{value}</tunnel>\n  </launcher>", config_xml)
    if updated == config_xml:
        updated = LAUNCHER_END_PATTERN.sub(lambda m: f"  <tunnel>{value}</tunnel>\n  {m.group(1)}", config_xml)
    return updated


class FingerprintPolicy(paramiko.MissingHostKeyPolicy):
    """
    Accepts the server only when its key matches the configured fingerprint.
    '-' disables the check; an empty fingerprint rejects and reports the actual one.
    """

    def __init__(self, expected: str):
        self.expected = expected.strip().lower()

    def missing_host_key(self, client, hostname, key):
        actual = format_host_fingerprint(key)
        if actual == self.expected or self.expected == "-":
            return

        if not self.expected:
            raise paramiko.SSHException(
                f"The host fingerprint of '{hostname}' is '{actual}'. "
                f"Please add this to the configuration in order to connect."
            )
        raise paramiko.SSHException(
            f"The host fingerprint of '{hostname}' is '{actual}' while '{self.expected}' was expected. Connection aborted."
        )


def _pump(source, target) -> None:
    """Copies bytes until either side closes, then closes both."""
    try:
        while data := source.recv(BUFFER_SIZE):
            target.sendall(data)
    except (OSError, EOFError) as e:
        logger.debug(f"Forwarded connection ended: {e}")
    finally:
        source.close()
        target.close()


class SSHTunnelEstablisher(Preparer):
    """Opens the tunnel when the client mode starts and closes it when it stopped."""

    name = "SSH Tunnel Establisher"

    def __init__(self):
        self._lock = threading.RLock()
        self._closables: List = []
        self._original_url: Optional[str] = None
        self._context = None
        self.state = TunnelState.IDLE
        self.connected = AtomicFlag(False)
        self.expected_tick = AtomicCounter(0)
        self.last_alive_tick = AtomicCounter(0)

    def is_config_acceptable(self, config) -> bool:
        if config.tunnel_ssh_enabled and not config.tunnel_ssh_address:
            logger.warning("SSH tunnel is enabled but SSH server address is empty.")
            return False
        if config.tunnel_ssh_address and not config.has_ci_connection():
            logger.warning("No Jenkins URI defined. SSH tunnel settings are not enough to connect to Jenkins.")
            return False
        return True

    def configure(self, context) -> None:
        self._context = context
        context.listeners.register(self.on_mode_transition)

    def prepare(self, context) -> None:
        if not context.config.tunnel_ssh_enabled:
            return
        interval = context.config.tunnel_heartbeat_seconds
        schedule("ssh-tunnel-probe", interval, self.probe, context.stop_event, logger)
        # Runs halfway between two probes so probe latency never reorders both tasks.
        schedule("ssh-tunnel-watchdog", interval, self.check_liveness, context.stop_event, logger,
                 delay=interval * 1.5)

    @staticmethod
    def _is_applicable(mode, config) -> bool:
        return (config.tunnel_ssh_enabled and bool(config.tunnel_ssh_address)
                and mode.name == "client" and config.has_ci_connection())

    def on_mode_transition(self, mode, next_status: Status, config) -> None:
        if not self._is_applicable(mode, config):
            return
        if next_status == Status.STARTING:
            self.setup()
        elif next_status == Status.STOPPED:
            self.teardown()

    # --- Setup & teardown ---

    def setup(self) -> None:
        """Connects the tunnel; failures are logged and leave the tunnel closed."""
        self.teardown()

        with self._lock:
            self.state = TunnelState.CONNECTING
            try:
                self._connect()
            except (paramiko.SSHException, OSError, JenkinsError) as e:
                logger.error(f"Failed establishing the SSH tunnel. Cause: {e}")
                self.teardown()
                return

            self.expected_tick.set(0)
            self.last_alive_tick.set(0)
            self.connected.set(True)
            self.state = TunnelState.CONNECTED

    def _connect(self) -> None:
        context = self._context
        config = context.config

        self._original_url = config.ci_host_url
        parsed = urlparse(self._original_url)
        ssh_address = f"{config.tunnel_ssh_address}:{config.tunnel_ssh_port}"

        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(FingerprintPolicy(config.tunnel_ssh_fingerprint))
        self._closables.append(client)
        client.connect(
            config.tunnel_ssh_address,
            port=config.tunnel_ssh_port,
            username=config.tunnel_ssh_username,
            password=config.tunnel_ssh_password,
            timeout=config.ssh_timeout,
            banner_timeout=config.ssh_timeout,
            auth_timeout=config.ssh_timeout,
            allow_agent=False,
            look_for_keys=False,
        )
        logger.info(f"Successfully connected with '{ssh_address}'.")

        transport = client.get_transport()

        http_listener = self._open_listener()
        http_address = http_listener.getsockname()
        self._start_forwarding(http_listener, transport, http_target(self._original_url))

        config.ci_host_url = urlunparse(parsed._replace(netloc=f"{LOOPBACK}:{http_address[1]}"))
        logger.info(f"Tunneling Jenkins HTTP via '{config.ci_host_url}'.")
        if parsed.scheme.lower() == "https" and not config.ci_accept_any_cert:
            logger.warning("The tunneled HTTPS connection will likely fail the host name check, consider 'noCertificateCheck'.")

        jnlp_port = context.jenkins.get_jnlp_port()
        jnlp_listener = self._open_listener()
        jnlp_address = f"{LOOPBACK}:{jnlp_listener.getsockname()[1]}"
        self._start_forwarding(jnlp_listener, transport, (parsed.hostname or "localhost", jnlp_port))

        context.jnlp_args["-url"] = config.ci_host_url
        context.jnlp_args["-tunnel"] = jnlp_address
        self.apply_tunnel_address(jnlp_address)

    def _open_listener(self) -> socket.socket:
        listener = socket.create_server((LOOPBACK, 0))
        self._closables.append(listener)
        logger.info(f"Opened local listener on '{LOOPBACK}:{listener.getsockname()[1]}'.")
        return listener

    def _start_forwarding(self, listener: socket.socket, transport: paramiko.Transport, target: Tuple[str, int]) -> None:
        threading.Thread(
            target=self._forward_connections, args=(listener, transport, target),
            name=f"ssh-tunnel-{target[0]}:{target[1]}", daemon=True,
        ).start()

    def _forward_connections(self, listener: socket.socket, transport: paramiko.Transport, target: Tuple[str, int]) -> None:
        while True:
            try:
                local, peer = listener.accept()
            except OSError:
                logger.debug("Failed accepting next incoming local connection, assuming the tunnel was closed.")
                return

            try:
                channel = transport.open_channel("direct-tcpip", target, peer)
            except (paramiko.SSHException, OSError) as e:
                logger.error(f"Failed forwarding incoming local connection to '{target[0]}:{target[1]}'. Cause: {e}")
                local.close()
                continue

            logger.debug(f"Forwarding local connection to '{target[0]}:{target[1]}' via '{transport.getpeername()[0]}'.")
            for source, destination in ((local, channel), (channel, local)):
                threading.Thread(target=_pump, args=(source, destination), daemon=True).start()

    def apply_tunnel_address(self, host_and_port: str) -> None:
        """Stores the tunnel address in the node config inside Jenkins."""
        context = self._context
        name = context.config.client_name
        try:
            config_xml = context.jenkins.get_node_config_xml(name).decode("utf-8")
            updated = update_or_add_tunnel_address(config_xml, host_and_port)
            if updated != config_xml:
                context.jenkins.post_node_config_xml(name, updated.encode("utf-8"))
                logger.info(f"Updated node '{name}' to tunnel connections via '{host_and_port}'")
        except (JenkinsError, UnicodeDecodeError) as e:
            logger.warning(f"Failed configuring local listener as tunnel inside Jenkins. Cause: {e}")

    @staticmethod
    def _shutdown_listener(listener: socket.socket) -> None:
        # close() alone does not wake a thread blocked in accept().
        try:
            listener.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            logger.debug(f"Failed shutting down listener: {e}")

    def teardown(self) -> None:
        """Closes the tunnel and restores the direct connection. Safe to call repeatedly."""
        with self._lock:
            if not self._closables and self._original_url is None:
                self.connected.set(False)
                self.state = TunnelState.IDLE
                return

            self.state = TunnelState.TEARING_DOWN
            for closable in reversed(self._closables):
                try:
                    if isinstance(closable, socket.socket):
                        self._shutdown_listener(closable)
                    closable.close()
                except (OSError, paramiko.SSHException) as e:
                    logger.debug(f"Failed closing {closable!r}: {e}")
            self._closables.clear()

            self.expected_tick.set(0)
            self.last_alive_tick.set(0)

            if self._context is not None and self._original_url is not None:
                self._context.config.ci_host_url = self._original_url
                self._context.jnlp_args.pop("-url", None)
                self._context.jnlp_args.pop("-tunnel", None)
            self._original_url = None

            self.connected.set(False)
            self.state = TunnelState.IDLE
            logger.info("SSH tunnel closed.")

    # --- Heartbeat ---

    def probe(self) -> None:
        if not self.connected.get():
            return
        context = self._context
        try:
            context.jenkins.get_node_status(context.config.client_name)
            self.last_alive_tick.set(self.expected_tick.get())
        except JenkinsError as e:
            logger.warning(f"Heartbeat through the SSH tunnel failed. Cause: {e}")

    def check_liveness(self) -> None:
        if not self.connected.get():
            return
        expected = self.expected_tick.increment()
        drift = abs(expected - self.last_alive_tick.get())
        if drift > 1:
            logger.error(f"SSH tunnel seems dead (missed {drift - 1} heartbeats), forcing a restart.")
            self.connected.set(False)
            self._context.configured_mode().stop()
