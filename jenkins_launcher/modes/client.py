"""
Run mode 'client': runs the Jenkins JNLP client (slave.jar) as a child process.

Jenkins client CLI options used here:
  -jnlpUrl URL                    : connection parameters are obtained by parsing the JNLP file.
  -secret HEX_SECRET              : slave connection secret to use instead of -jnlpCredentials.
  -auth user:pass                 : user name and password of a security-enabled Jenkins.
  -jnlpCredentials USER:PASSWORD  : HTTP BASIC AUTH header for HTTP requests.
  -noCertificateCheck             : accept any server certificate.
  -noReconnect                    : exit instead of reconnecting when the communication fails.
"""

import logging
import os
import subprocess
import sys
import threading
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Dict, List, Optional

from ..errors import JenkinsError
from ..output import ConsoleRedirector
from .base import Mode

logger = logging.getLogger("launcher.client")

CUSTOM_JNLP_FILE = "~slave-agent.jnlp"

SENSITIVE_MARKERS = ("auth", "credentials", "password", "secret")


def filter_command(java: str, args: List[str]) -> List[str]:
    """
    Returns the command line with the values of sensitive flags masked.
    Example: ['-auth', 'user:pass'] -> ['-auth', '***']
    """
    commands = [java] + list(args)
    name = ""
    for index, value in enumerate(commands):
        if value.startswith("-"):
            name = value.lower()
        elif any(marker in name for marker in SENSITIVE_MARKERS):
            commands[index] = "***"
    return commands


def customize_jnlp(content: bytes, jnlp_args: Dict[str, str]) -> bytes:
    """
    Replaces arguments of the JNLP descriptor's <application-desc>.
    Arguments named in 'jnlp_args' are removed together with their value and
    the new name/value pairs are appended at the end.
    """
    root = ET.fromstring(content)
    application = root if root.tag == "application-desc" else root.find(".//application-desc")
    if application is None:
        raise ValueError("JNLP descriptor has no <application-desc> element.")

    arguments = application.findall("argument")
    skip = 0
    for argument in arguments:
        if skip:
            application.remove(argument)
            skip -= 1
        elif (argument.text or "").strip() in jnlp_args:
            application.remove(argument)
            skip = 1

    for name, value in jnlp_args.items():
        for text in (name, value):
            ET.SubElement(application, "argument").text = text

    return ET.tostring(root, encoding="utf-8", xml_declaration=True)


class ClientMode(Mode):
    """Keeps one Jenkins JNLP client process running until stopped."""

    name = "client"

    POLL_INTERVAL = 0.1
    TERMINATION_TIMEOUT = 5.0
    RESTART_DELAY = 1.0
    REDIRECTOR_JOIN_TIMEOUT = 2.0

    def is_config_acceptable(self, context) -> bool:
        config = context.config
        if not config.has_ci_connection():
            logger.error("No Jenkins URI defined. Cannot connect to the CI server.")
            return False

        if not config.secret_key and not self.is_auth_passed_via_commandline(config):
            try:
                config.secret_key = context.jenkins.get_secret(config.client_name)
            except JenkinsError as e:
                logger.error(f"Failed fetching secret key from Jenkins. Cause: {e}")

            if not config.secret_key:
                logger.error(f"No secret key set for node {config.client_name} and the attempt to fetch it from Jenkins failed.")
                return False

        return True

    @staticmethod
    def is_auth_passed_via_commandline(config) -> bool:
        return bool(config.ci_username and config.ci_password and config.pass_ci_auth)

    def build_command(self, context) -> List[str]:
        """Returns the full command line including the Java executable."""
        config = context.config

        args: List[str] = list(context.java_args) + list(config.java_args)
        if config.java_max_memory:
            args.append(f"-Xmx{config.java_max_memory}")

        args.extend(["-jar", str(context.client_jar)])

        if context.jnlp_args and self._write_custom_jnlp(context):
            args.extend(["-jnlpUrl", f"file:./{CUSTOM_JNLP_FILE}"])
        else:
            args.extend(["-jnlpUrl", f"{config.ci_host_url.rstrip('/')}/computer/{config.client_name}/slave-agent.jnlp"])
            if config.secret_key and not self.is_auth_passed_via_commandline(config):
                args.extend(["-secret", config.secret_key])

        if config.ci_accept_any_cert:
            args.append("-noCertificateCheck")

        if config.handle_reconnects_in_launcher:
            args.append("-noReconnect")

        if self.is_auth_passed_via_commandline(config):
            credentials = f"{config.ci_username}:{config.ci_password}"
            args.extend(["-auth", credentials, "-jnlpCredentials", credentials])

        return [context.java] + args

    def _write_custom_jnlp(self, context) -> bool:
        try:
            content = context.jenkins.get_agent_jnlp(context.config.client_name)
            Path(CUSTOM_JNLP_FILE).write_bytes(customize_jnlp(content, context.jnlp_args))
            return True
        except (JenkinsError, OSError, ValueError, ET.ParseError) as e:
            logger.error(f"Failed creating customized JNLP config. Cause: {e}")
            return False

    def on_console_line(self, context, line: str) -> None:
        """Schedules one asynchronous stop when the line contains a restart token."""
        config = context.config
        if config.monitor_console and config.is_restart_triggered(line):
            logger.warning("RESTART TOKEN found in console output. Client state may be invalid, forcing a restart.")
            timer = threading.Timer(self.RESTART_DELAY, self.stop)
            timer.daemon = True
            timer.start()

    def _terminate_process(self, process: Optional[subprocess.Popen]) -> None:
        """Terminate subprocess gracefully, escalating to force kill if needed."""
        if process is None or process.poll() is not None:
            return

        try:
            process.terminate()
            process.wait(timeout=self.TERMINATION_TIMEOUT)
        except subprocess.TimeoutExpired:
            process.kill()
            try:
                process.wait(timeout=self.TERMINATION_TIMEOUT)
            except subprocess.TimeoutExpired:
                logger.error(f"Jenkins client (pid {process.pid}) did not terminate.")

    def execute(self, context) -> None:
        command = self.build_command(context)
        logger.info(f"Starting: {' '.join(filter_command(command[0], command[1:]))}")

        try:
            process = subprocess.Popen(command, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        except OSError as e:
            logger.error(f"Jenkins client failed to start with {e}")
            return

        logger.info("Jenkins client was started.")
        redirectors = [
            ConsoleRedirector(process.stdout, sys.stdout, lambda line: self.on_console_line(context, line), "client-stdout"),
            ConsoleRedirector(process.stderr, sys.stderr, lambda line: self.on_console_line(context, line), "client-stderr"),
        ]
        for redirector in redirectors:
            redirector.start()

        try:
            if self._set_started():
                while not self.wait_for_stop_request(self.POLL_INTERVAL):
                    if process.poll() is not None:
                        break

            if process.poll() is None:
                logger.info("Stopping Jenkins client...")
                self._terminate_process(process)
                logger.info("Jenkins client was stopped.")
            elif process.returncode != 0:
                logger.warning(f"Jenkins client quit with exit code {process.returncode}")
            else:
                logger.info("Jenkins client exited.")
        finally:
            self._terminate_process(process)
            for redirector in redirectors:
                redirector.join(self.REDIRECTOR_JOIN_TIMEOUT)
            if context.jnlp_args and os.path.exists(CUSTOM_JNLP_FILE):
                os.remove(CUSTOM_JNLP_FILE)
