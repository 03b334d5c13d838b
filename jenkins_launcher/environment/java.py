import logging
import os
import re
import shutil
import subprocess
from typing import Optional

from packaging.version import InvalidVersion, Version

from ..errors import FatalConfigurationError
from .base import Preparer

logger = logging.getLogger("launcher.java")

MIN_JAVA_VERSION = Version("1.6.0")

JAVA_VERSION_PATTERN = re.compile(r'(?:java|openjdk) version "([^"]+)"', re.IGNORECASE)
NUMERIC_PREFIX_PATTERN = re.compile(r'\d+(?:\.\d+)*')


def parse_java_version(output: str) -> Optional[Version]:
    """
    Extracts the version from 'java -version' output.
    '1.8.0_292' is read as 1.8.0, '17.0.2' as 17.0.2.
    """
    if not (match := JAVA_VERSION_PATTERN.search(output)):
        return None
    if not (numeric := NUMERIC_PREFIX_PATTERN.match(match.group(1))):
        return None
    try:
        return Version(numeric.group(0))
    except InvalidVersion:
        return None


class JavaLocator(Preparer):
    """Finds a Java runtime that can run the Jenkins client."""

    name = "Java Locator"

    VERSION_TIMEOUT = 30

    def is_config_acceptable(self, config) -> bool:
        return config.run_mode == "client"

    @staticmethod
    def find_java() -> Optional[str]:
        if java_home := os.getenv("JAVA_HOME"):
            if java := shutil.which("java", path=os.path.join(java_home, "bin")):
                return java
        return shutil.which("java")

    def java_version(self, java: str) -> Optional[Version]:
        try:
            result = subprocess.run([java, "-version"], capture_output=True, text=True, timeout=self.VERSION_TIMEOUT)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.error(f"Failed running '{java} -version': {e}")
            return None
        return parse_java_version(result.stderr + result.stdout)

    def configure(self, context) -> None:
        if not (java := self.find_java()):
            raise FatalConfigurationError("Java was not found. Install Java manually or set JAVA_HOME.")

        version = self.java_version(java)
        if version is None:
            raise FatalConfigurationError(f"Cannot determine the version of {java}.")
        if version < MIN_JAVA_VERSION:
            raise FatalConfigurationError(
                f"Found java version {version}. Version {MIN_JAVA_VERSION} or newer is required to run the Jenkins client."
            )

        logger.info(f"Found java version {version} at {java}.")
        context.java = java
