"""
Launcher configuration.

Values are resolved in three layers: built-in defaults (some of them taken from
environment variables), the XML file 'launcher.config' in the working directory
and finally the command line flags merged in by the CLI.
"""

import logging
import os
import re
import socket
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import Path
from typing import ClassVar, List, Optional, Tuple, Union

from .errors import FatalConfigurationError

logger = logging.getLogger("launcher.config")

CONFIG_NAME = "launcher.config"

CLEANUP_MODES = ("TTLPerFile", "TTLPerLocation")

CONFIG_DESCRIPTION = """

Configuration file for Jenkins Client Launcher (JCL)

<ci>            Connection to the Jenkins server (url, noCertificateCheck, auth and the
                optional SSH tunnel under tunnel>jnlp>ssh). SSH connections are verified
                using the server's public key fingerprint: add the value that is reported
                on the first connect to <fingerprint>00:00:00:...</fingerprint>.
<client>        Node name, secret key, monitoring and restart behaviour.
<java>          Additional JVM options and periodic forced full GC.
<sshServer>     Listen address and credentials for run mode 'ssh-server'.
<console>       Error tokens that trigger a client restart when printed.
<maintenance>   Cleanup of expired files (modes: TTLPerFile, TTLPerLocation).
"""


def _default_hostname() -> str:
    try:
        return socket.gethostname()
    except OSError:
        return ""


@dataclass
class CleanupSettings:
    """A location that is periodically cleaned from expired files."""
    enabled: bool = True
    location: str = ""
    only_when_idle: bool = True
    interval_hours: int = 4
    ttl_hours: int = 48
    mode: str = "TTLPerFile"
    exclusions: List[str] = field(default_factory=list)


def _default_cleanup_settings() -> List[CleanupSettings]:
    return [
        CleanupSettings(enabled=True, location="${TEMP}", only_when_idle=True,
                        interval_hours=4, ttl_hours=24 * 2, mode="TTLPerFile"),
        CleanupSettings(enabled=False, location=os.path.join("${WORKSPACE}", "*"), only_when_idle=True,
                        interval_hours=4, ttl_hours=24 * 7, mode="TTLPerLocation"),
    ]


@dataclass
class Config:
    """
    Holds the launcher configuration.
    Responsible for validating inputs and (de)serializing 'launcher.config'.
    """
    run_mode: str = "client"
    autostart: bool = False

    # Jenkins connection
    ci_host_url: str = field(default_factory=lambda: os.getenv("JENKINS_URL", ""))
    ci_accept_any_cert: bool = False
    ci_username: str = field(default_factory=lambda: os.getenv("JENKINS_USER", "admin"))
    ci_password: str = field(default_factory=lambda: os.getenv("JENKINS_PASSWORD", "changeit"))

    # SSH tunnel
    tunnel_ssh_enabled: bool = False
    tunnel_ssh_address: str = ""
    tunnel_ssh_port: int = 22
    tunnel_ssh_fingerprint: str = ""
    tunnel_ssh_username: str = ""
    tunnel_ssh_password: str = field(default_factory=lambda: os.getenv("LAUNCHER_SSH_PASSWORD", ""))
    tunnel_heartbeat_seconds: int = 15

    # Client
    client_name: str = field(default_factory=lambda: os.getenv("JENKINS_NODE_NAME") or _default_hostname())
    secret_key: str = field(default_factory=lambda: os.getenv("JENKINS_SECRET", ""))
    pass_ci_auth: bool = False
    create_client_if_missing: bool = False
    monitor_state_on_server: bool = True
    monitor_state_max_failures: int = 2
    monitor_interval_seconds: int = 15
    monitor_console: bool = True
    handle_reconnects_in_launcher: bool = False
    sleep_seconds_between_failures: int = 30
    periodic_restart_enabled: bool = False
    periodic_restart_only_when_idle: bool = True
    periodic_restart_interval_hours: int = 48
    oom_restart_enabled: bool = True
    oom_restart_only_when_idle: bool = True
    idle_poll_seconds: int = 300

    # Java
    # GC is tuned for a low footprint, leaving memory for IO cache and forked builds.
    java_args: List[str] = field(default_factory=lambda: [
        "-Xms10m",
        "-XX:GCTimeRatio=8",
        "-XX:+ClassUnloading",
        "-XX:+UseMaximumCompactionOnSystemGC",
    ])
    java_max_memory: str = ""
    force_full_gc: bool = True
    force_full_gc_only_when_idle: bool = True
    force_full_gc_interval_minutes: int = 15
    force_full_gc_idle_interval_minutes: int = 5

    # SSH server (run mode 'ssh-server')
    ssh_listen_address: str = "0.0.0.0"
    ssh_listen_port: int = 2022
    ssh_username: str = "ssh"
    ssh_password: str = "changeit"

    # Console monitoring
    restart_trigger_tokens: List[str] = field(default_factory=lambda: [
        "java.lang.OutOfMemoryError",
        "I/O error in channel channel",
        "The server rejected the connection",
        "java.net.SocketTimeoutException",
    ])

    # Maintenance
    cleanup_settings: List[CleanupSettings] = field(default_factory=_default_cleanup_settings)

    # Timeouts & Retries
    http_timeout: float = 30.0
    ssh_timeout: float = 30.0
    api_retries: int = 2
    api_backoff: float = 1.5

    # Not persisted: True when no config file was loaded.
    needs_save: bool = True

    # (attribute, XML path) for scalar and list values; lists use the path of the repeated element.
    XML_FIELDS: ClassVar[Tuple[Tuple[str, str], ...]] = (
        ("ci_host_url", "ci/url"),
        ("ci_accept_any_cert", "ci/noCertificateCheck"),
        ("ci_username", "ci/auth/user"),
        ("ci_password", "ci/auth/password"),
        ("tunnel_ssh_enabled", "ci/tunnel/jnlp/ssh/enabled"),
        ("tunnel_ssh_address", "ci/tunnel/jnlp/ssh/address"),
        ("tunnel_ssh_port", "ci/tunnel/jnlp/ssh/port"),
        ("tunnel_ssh_fingerprint", "ci/tunnel/jnlp/ssh/fingerprint"),
        ("tunnel_ssh_username", "ci/tunnel/jnlp/ssh/auth/user"),
        ("tunnel_ssh_password", "ci/tunnel/jnlp/ssh/auth/password"),
        ("tunnel_heartbeat_seconds", "ci/tunnel/jnlp/ssh/heartbeat/seconds"),
        ("http_timeout", "ci/timeouts/http"),
        ("ssh_timeout", "ci/timeouts/ssh"),
        ("api_retries", "ci/retries/count"),
        ("api_backoff", "ci/retries/backoff"),
        ("client_name", "client/name"),
        ("secret_key", "client/secretKey"),
        ("pass_ci_auth", "client/passAuth"),
        ("create_client_if_missing", "client/createIfMissing"),
        ("monitor_state_on_server", "client/monitoring/stateOnServer/enabled"),
        ("monitor_state_max_failures", "client/monitoring/stateOnServer/maxFailures"),
        ("monitor_interval_seconds", "client/monitoring/stateOnServer/interval/seconds"),
        ("monitor_console", "client/monitoring/console/enabled"),
        ("idle_poll_seconds", "client/monitoring/idlePoll/seconds"),
        ("handle_reconnects_in_launcher", "client/restart/handleReconnects"),
        ("sleep_seconds_between_failures", "client/restart/sleepOnFailure/seconds"),
        ("periodic_restart_enabled", "client/restart/periodic/enabled"),
        ("periodic_restart_only_when_idle", "client/restart/periodic/onlyWhenIdle"),
        ("periodic_restart_interval_hours", "client/restart/periodic/interval/hours"),
        ("oom_restart_enabled", "client/restart/outOfMemory/enabled"),
        ("oom_restart_only_when_idle", "client/restart/outOfMemory/onlyWhenIdle"),
        ("java_args", "java/args/arg"),
        ("java_max_memory", "java/maxMemory"),
        ("force_full_gc", "java/forceFullGC/enabled"),
        ("force_full_gc_only_when_idle", "java/forceFullGC/onlyWhenIdle"),
        ("force_full_gc_interval_minutes", "java/forceFullGC/interval/minutes"),
        ("force_full_gc_idle_interval_minutes", "java/forceFullGC/idleInterval/minutes"),
        ("ssh_listen_address", "sshServer/address"),
        ("ssh_listen_port", "sshServer/port"),
        ("ssh_username", "sshServer/auth/user"),
        ("ssh_password", "sshServer/auth/password"),
        ("restart_trigger_tokens", "console/errorTokens/token"),
    )

    HTTP_URL_PATTERN = re.compile(r'^https?://.+', re.IGNORECASE)

    def has_ci_connection(self) -> bool:
        """Returns True if the configuration has a Jenkins http(s) URL."""
        return bool(self.ci_host_url and self.HTTP_URL_PATTERN.match(self.ci_host_url))

    def is_restart_triggered(self, line: str) -> bool:
        """Returns True if the given console line contains a restart trigger token."""
        return any(token and token in line for token in self.restart_trigger_tokens)

    def validate(self):
        """Validates values that would otherwise fail at runtime."""
        if not self.run_mode:
            raise FatalConfigurationError("No run mode configured.")

        if not 0 < self.tunnel_ssh_port < 65536:
            raise FatalConfigurationError(f"Invalid SSH tunnel port {self.tunnel_ssh_port}.")

        if not 0 < self.ssh_listen_port < 65536:
            raise FatalConfigurationError(f"Invalid SSH server port {self.ssh_listen_port}.")

        for name in ("sleep_seconds_between_failures", "periodic_restart_interval_hours",
                     "monitor_state_max_failures", "force_full_gc_interval_minutes",
                     "force_full_gc_idle_interval_minutes", "api_retries"):
            if getattr(self, name) < 0:
                raise FatalConfigurationError(f"Invalid negative value for '{name}'.")

        for name in ("tunnel_heartbeat_seconds", "monitor_interval_seconds", "idle_poll_seconds"):
            if getattr(self, name) <= 0:
                raise FatalConfigurationError(f"'{name}' must be greater than 0.")

        for setting in self.cleanup_settings:
            if setting.mode not in CLEANUP_MODES:
                raise FatalConfigurationError(
                    f"Invalid cleanup mode '{setting.mode}' for '{setting.location}'. "
                    f"Allowed modes: {', '.join(CLEANUP_MODES)}"
                )

    # --- Persistence ---

    @classmethod
    def load(cls, path: Union[str, Path] = CONFIG_NAME) -> "Config":
        """
        Returns a config initialized from the specified file.
        When the file cannot be loaded, the default config is returned (needs_save=True).
        """
        config = cls()
        path = Path(path)

        try:
            root = ET.parse(path).getroot()
        except (OSError, ET.ParseError) as e:
            logger.info(f"Using default configuration. Loading '{path}' failed: {e}")
            return config

        logger.info(f"Loading configuration from {path}")
        config._apply_xml(root)
        config.needs_save = False
        return config

    def _apply_xml(self, root: ET.Element):
        self.run_mode = root.get("runMode", self.run_mode) or self.run_mode
        self.autostart = self._convert(root.get("autostart"), self.autostart)

        for name, path in self.XML_FIELDS:
            current = getattr(self, name)

            if isinstance(current, list):
                # Lists missing in the file keep their defaults.
                values = [e.text.strip() for e in root.findall(path) if e.text and e.text.strip()]
                if values:
                    setattr(self, name, values)
                continue

            element = root.find(path)
            if element is not None and element.text is not None:
                try:
                    setattr(self, name, self._convert(element.text.strip(), current))
                except ValueError:
                    raise FatalConfigurationError(f"Invalid value '{element.text}' for <{path}>.")

        cleanups = root.findall("maintenance/cleanup")
        if cleanups:
            self.cleanup_settings = [self._cleanup_from_xml(e) for e in cleanups]

    @staticmethod
    def _convert(text: Optional[str], current):
        if text is None:
            return current
        if isinstance(current, bool):
            return text.strip().lower() in ("true", "1", "yes")
        if isinstance(current, int):
            return int(text)
        if isinstance(current, float):
            return float(text)
        return text

    @classmethod
    def _cleanup_from_xml(cls, element: ET.Element) -> CleanupSettings:
        setting = CleanupSettings()
        setting.enabled = cls._convert(element.findtext("enabled"), setting.enabled)
        setting.location = element.findtext("location", setting.location).strip()
        setting.only_when_idle = cls._convert(element.findtext("onlyWhenIdle"), setting.only_when_idle)
        setting.mode = element.findtext("mode", setting.mode).strip()
        setting.exclusions = [e.text.strip() for e in element.findall("exclusions/exclusion") if e.text]
        try:
            setting.interval_hours = cls._convert(element.findtext("interval/hours"), setting.interval_hours)
            setting.ttl_hours = cls._convert(element.findtext("ttl/hours"), setting.ttl_hours)
        except ValueError as e:
            raise FatalConfigurationError(f"Invalid cleanup setting for '{setting.location}': {e}")
        return setting

    @staticmethod
    def _element_at(root: ET.Element, path: str) -> ET.Element:
        """Finds or creates the element at the given path."""
        element = root
        for tag in path.split("/"):
            child = element.find(tag)
            if child is None:
                child = ET.SubElement(element, tag)
            element = child
        return element

    @staticmethod
    def _to_text(value) -> str:
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    def to_xml(self) -> ET.Element:
        root = ET.Element("config", runMode=self.run_mode, autostart=self._to_text(self.autostart))
        root.append(ET.Comment(CONFIG_DESCRIPTION))

        for name, path in self.XML_FIELDS:
            value = getattr(self, name)
            if isinstance(value, list):
                parent_path, _, tag = path.rpartition("/")
                parent = self._element_at(root, parent_path)
                for item in value:
                    ET.SubElement(parent, tag).text = item
            else:
                self._element_at(root, path).text = self._to_text(value)

        maintenance = self._element_at(root, "maintenance")
        for setting in self.cleanup_settings:
            cleanup = ET.SubElement(maintenance, "cleanup")
            ET.SubElement(cleanup, "enabled").text = self._to_text(setting.enabled)
            ET.SubElement(cleanup, "location").text = setting.location
            ET.SubElement(cleanup, "onlyWhenIdle").text = self._to_text(setting.only_when_idle)
            ET.SubElement(ET.SubElement(cleanup, "interval"), "hours").text = str(setting.interval_hours)
            ET.SubElement(ET.SubElement(cleanup, "ttl"), "hours").text = str(setting.ttl_hours)
            ET.SubElement(cleanup, "mode").text = setting.mode
            exclusions = ET.SubElement(cleanup, "exclusions")
            for pattern in setting.exclusions:
                ET.SubElement(exclusions, "exclusion").text = pattern

        return root

    def save(self, path: Union[str, Path] = CONFIG_NAME):
        """Saves the config to the specified file."""
        path = Path(path)
        logger.info(f"Saving configuration to '{path}'")

        tree = ET.ElementTree(self.to_xml())
        ET.indent(tree, space="    ")
        try:
            tree.write(path, encoding="utf-8", xml_declaration=True)
            self.needs_save = False
        except OSError as e:
            logger.error(f"Failed writing configuration to {path}: {e}")
