import logging
from pathlib import Path

from ..errors import FatalConfigurationError, JenkinsError
from ..jenkins import CLIENT_JAR_URI
from ..modes.base import Status
from .base import Preparer

logger = logging.getLogger("launcher.download")

CLIENT_JAR_NAME = "slave.jar"


class JenkinsClientDownloader(Preparer):
    """Fetches the current client jar from Jenkins whenever the client mode starts."""

    name = "Jenkins Client Downloader"

    def __init__(self):
        self._context = None

    def configure(self, context) -> None:
        self._context = context
        context.client_jar = Path(CLIENT_JAR_NAME).absolute()
        context.listeners.register(self.on_mode_transition)

    def on_mode_transition(self, mode, next_status: Status, config) -> None:
        if mode.name == "client" and next_status == Status.STARTING and config.has_ci_connection():
            self.download()

    def download(self) -> None:
        jenkins = self._context.jenkins
        jar = self._context.client_jar

        logger.info(f"Getting latest Jenkins client {jenkins.url_for(CLIENT_JAR_URI)}")
        try:
            if jenkins.download_client_jar(jar):
                logger.info(f"Downloaded Jenkins client to {jar}.")
            else:
                logger.info("Jenkins client is up-to-date, no need to download.")
        except JenkinsError as e:
            if not jar.exists():
                raise FatalConfigurationError(f"No Jenkins client available: {e}")
            logger.warning(f"Failed downloading Jenkins client, using the existing one. Cause: {e}")
