import logging
import os
import socket
from typing import List, Optional

from ..errors import JenkinsError
from .base import Preparer

logger = logging.getLogger("launcher.naming")


def match_node_name(client_name: str, names: List[str]) -> Optional[str]:
    """
    Returns the registered node name matching the client name.
    An exact (case insensitive) match wins over a 'name.' prefix match, e.g.
    'build01' matches 'build01.example.com'.
    """
    wanted = client_name.lower()
    match = None
    for name in names:
        lower = name.lower()
        if lower == wanted:
            return name
        if wanted and lower.startswith(wanted + "."):
            match = name
    return match


class NodeNameNormalizer(Preparer):
    """Finds the node name that Jenkins uses for this machine and optionally creates the node."""

    name = "Node Name Normalizer"

    def configure(self, context) -> None:
        config = context.config
        if not config.has_ci_connection():
            return

        if not config.client_name:
            config.client_name = socket.gethostname()

        try:
            found = self.verify_node_name(context)
        except JenkinsError as e:
            logger.warning(f"Failed to verify the client node name in Jenkins. Cause: {e}")
            return

        if not found:
            if config.create_client_if_missing:
                try:
                    context.jenkins.create_node(config.client_name, os.getcwd())
                    logger.info(f"Created node '{config.client_name}' in Jenkins.")
                    found = self.verify_node_name(context)
                except JenkinsError as e:
                    logger.error(f"Tried to create node '{config.client_name}' in Jenkins but failed. Cause: {e}")
            else:
                logger.info(f"Will not attempt to auto generate node '{config.client_name}' in Jenkins. "
                            f"Enable this with '--create' or within the configuration.")

        if found:
            logger.info(f"Found client node name in Jenkins, using '{config.client_name}'.")
        else:
            logger.warning(f"Client node name '{config.client_name}' was NOT FOUND in Jenkins. "
                           f"Likely the next operations will fail.")

    def verify_node_name(self, context) -> bool:
        config = context.config
        if name := match_node_name(config.client_name, context.jenkins.get_all_node_names()):
            config.client_name = name
            return True
        return False
