"""
Command line entry point.

This application attempts to provide a stable runtime environment for a Jenkins client.
Regardless of the run mode, clients are started in 'user-mode' inheriting user & environment
of the caller. Functionality is controlled via CLI options and 'launcher.config' which is
created in the current working directory when missing.

ENVIRONMENT VARIABLES:
======================
  JENKINS_URL            - Jenkins URL (default for <ci><url>)
  JENKINS_NODE_NAME      - Node name (defaults to the hostname)
  JENKINS_SECRET         - JNLP secret of the node
  JENKINS_USER           - Jenkins user (default: admin)
  JENKINS_PASSWORD       - Jenkins password or API token
  LAUNCHER_SSH_PASSWORD  - Password for the SSH tunnel
"""

import argparse
import logging
import os
import re
import sys
from enum import IntEnum
from pathlib import Path
from typing import List, Optional
from urllib.error import URLError
from urllib.request import urlopen

from . import APP_NAME, __version__
from .config import CONFIG_NAME, Config
from .errors import FatalConfigurationError, LauncherError
from .launcher import Launcher
from .pidfile import PidFile

logger = logging.getLogger("launcher")

HTTP_URL_PATTERN = re.compile(r'^https?://.+', re.IGNORECASE)


class LauncherExitCode(IntEnum):
    """Exit codes of the launcher process."""
    SUCCESS = 0
    ERROR = 1
    CONFIGURATION_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="jenkins-launcher",
        description=f"{APP_NAME} {__version__}: keeps a Jenkins client connected to its server.",
    )
    parser.add_argument("--run-mode", help=f"Mode in which the launcher operates (client, ssh-server). "
                                           f"Overrides the value inside '{CONFIG_NAME}'.")
    parser.add_argument("--url", help="URL of the Jenkins server.")
    parser.add_argument("--name", help="Name of this node in Jenkins (defaults to the hostname).")
    parser.add_argument("--create", action="store_true", help="Create the Jenkins node if it is missing.")
    parser.add_argument("--secret", help="Secret key used in client mode when starting the Jenkins client.")
    parser.add_argument("--any-cert", action="store_true",
                        help="Disable certificate verification for TLS connections with Jenkins (not secure).")
    parser.add_argument("--directory", help="Change the working directory before doing anything else.")
    parser.add_argument("--persist", action="store_true", help=f"Store CLI overrides inside '{CONFIG_NAME}'.")
    parser.add_argument("--default-config",
                        help=f"Load the initial config from a path or http(s) URL ('.' = next to the launcher). "
                             f"Does nothing when '{CONFIG_NAME}' exists already.")
    parser.add_argument("--overwrite", action="store_true",
                        help=f"Overwrite '{CONFIG_NAME}' with the initial config (requires --default-config, implies --persist).")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging.")
    return parser


def handle_working_directory(directory: Optional[str]):
    if not directory:
        return

    path = Path(directory)
    if path.resolve() == Path.cwd().resolve():
        return

    logger.info(f"Changing working directory to {path}")
    if not path.exists():
        logger.info(f"Working directory {path} does not exist, creating it now.")
        try:
            path.mkdir(parents=True)
        except OSError as e:
            raise FatalConfigurationError(f"Failed creating working directory {path}. Cause: {e}")
    elif not path.is_dir():
        raise FatalConfigurationError(f"{path} is not a directory, cannot change working directory.")

    try:
        os.chdir(path)
    except OSError as e:
        raise FatalConfigurationError(f"Failed changing working directory to {path}. Cause: {e}")


def fetch_default_config(source: str) -> bytes:
    """Reads the initial config from a file or an http(s) URL."""
    if source == ".":
        source = str(Path(sys.argv[0]).resolve().parent / CONFIG_NAME)

    try:
        if HTTP_URL_PATTERN.match(source):
            logger.info(f"Downloading: {source}")
            with urlopen(source, timeout=30) as resp:
                return resp.read()

        logger.info(f"Copying: {source}")
        return Path(source).read_bytes()
    except (URLError, OSError) as e:
        raise FatalConfigurationError(f"Failed loading {source}; Cause: {e}")


def load_config(default_config: Optional[str], overwrite: bool) -> Config:
    config = Config.load(CONFIG_NAME)

    if default_config and (config.needs_save or overwrite):
        content = fetch_default_config(default_config)
        try:
            Path(CONFIG_NAME).write_bytes(content)
        except OSError as e:
            raise FatalConfigurationError(f"Failed creating initial {CONFIG_NAME} from {default_config}; Cause: {e}")
        config = Config.load(CONFIG_NAME)

    return config


def merge_flags(config: Config, args: argparse.Namespace):
    if args.run_mode:
        config.run_mode = args.run_mode
    if args.url:
        config.ci_host_url = args.url
    if args.secret:
        config.secret_key = args.secret
    if args.name:
        config.client_name = args.name
    if args.create:
        config.create_client_if_missing = True
    if args.any_cert:
        config.ci_accept_any_cert = True


def main(argv: Optional[List[str]] = None):
    """Main entry point"""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s.%(msecs)03d [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    logger.info(f"{APP_NAME} {__version__}")

    try:
        handle_working_directory(args.directory)

        with PidFile():
            config = load_config(args.default_config, args.overwrite)
            merge_flags(config, args)
            config.validate()

            launcher = Launcher(config, persist=args.persist or args.overwrite)
            launcher.prepare()
            launcher.run()
    except FatalConfigurationError as e:
        logger.error(str(e))
        sys.exit(LauncherExitCode.CONFIGURATION_ERROR)
    except LauncherError as e:
        logger.error(str(e))
        sys.exit(LauncherExitCode.ERROR)
    except KeyboardInterrupt:
        logger.info("Interrupted by user.")
        sys.exit(LauncherExitCode.SUCCESS)
    except Exception:
        logger.exception("Unexpected error occurred.")
        sys.exit(LauncherExitCode.ERROR)


if __name__ == "__main__":
    main()
