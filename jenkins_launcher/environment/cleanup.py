"""
Removal of expired files in configured locations (temp directories, workspaces).

Modes:
  TTLPerFile      every file older than the TTL is removed.
  TTLPerLocation  a location is only cleaned when all of its files are expired
                  and none of them is excluded.
"""

import fnmatch
import glob
import logging
import os
import re
import tempfile
import time
from pathlib import Path
from typing import List

from ..errors import JenkinsError
from ..scheduling import schedule, wait_for_idle
from .base import Preparer

logger = logging.getLogger("launcher.cleanup")

MIN_TTL_HOURS = 6
MIN_INTERVAL_HOURS = 2

VARIABLE_PATTERN = re.compile(r'\$\{(\w+)\}|\$(\w+)')


def expand_location(location: str, workspace: str) -> str:
    """Expands $VAR and ${VAR}; 'workspace' maps to the node workspace, TEMP/TMP default to the system temp dir."""
    def replace(match):
        name = match.group(1) or match.group(2)
        if name.lower() == "workspace":
            return workspace
        if value := os.getenv(name):
            return value
        if name.upper() in ("TEMP", "TMP", "TMPDIR"):
            return tempfile.gettempdir()
        return ""

    return VARIABLE_PATTERN.sub(replace, location)


def find_locations(location: str, workspace: str) -> List[str]:
    expanded = expand_location(location, workspace)
    if any(char in expanded for char in "*?["):
        return sorted(path for path in glob.glob(expanded) if os.path.isdir(path))
    return [expanded] if os.path.isdir(expanded) else []


def is_excluded(path: str, exclusions: List[str]) -> bool:
    name = os.path.basename(path)
    return any(fnmatch.fnmatch(path, pattern) or fnmatch.fnmatch(name, pattern) for pattern in exclusions)


def cleanup_files(root: str, expired_before: float, exclusions: List[str], dry_run: bool = False) -> int:
    """Removes expired files below root and returns the number of files that were kept."""
    kept = 0
    for directory, _, filenames in os.walk(root):
        for filename in filenames:
            path = os.path.join(directory, filename)
            try:
                modified = os.lstat(path).st_mtime
            except OSError:
                continue

            if modified > expired_before or is_excluded(path, exclusions):
                kept += 1
                continue

            if not dry_run:
                try:
                    os.remove(path)
                    logger.info(f"Removed expired: {path}")
                except OSError as e:
                    logger.debug(f"Failed removing {path}: {e}")
    return kept


def remove_empty_directories(root: str) -> None:
    for directory, _, _ in os.walk(root, topdown=False):
        if directory == root or os.listdir(directory):
            continue
        try:
            os.rmdir(directory)
            logger.info(f"Removed empty directory: {directory}")
        except OSError as e:
            logger.debug(f"Failed removing {directory}: {e}")


def cleanup_locations(locations: List[str], exclusions: List[str], mode: str, ttl_hours: int) -> None:
    expired_before = time.time() - ttl_hours * 3600

    for root in locations:
        logger.info(f"Cleaning expired files in {root}")

        if mode == "TTLPerLocation" and cleanup_files(root, expired_before, exclusions, dry_run=True) > 0:
            logger.info(f"Location {root} still contains recent or excluded files, skipping.")
            continue

        cleanup_files(root, expired_before, exclusions)
        remove_empty_directories(root)


class LocationCleaner(Preparer):
    name = "Directory Cleaner"

    def __init__(self):
        self.workspace_path = ""

    def get_workspace_path(self, context) -> str:
        base_dir = os.getcwd()
        try:
            if remote_fs := context.jenkins.get_node_config(context.config.client_name).remote_fs:
                base_dir = str(Path(remote_fs))
        except JenkinsError as e:
            logger.debug(f"Node config not available, using the working directory as workspace root: {e}")
        return os.path.join(base_dir, "workspace")

    def prepare(self, context) -> None:
        settings = [setting for setting in context.config.cleanup_settings if setting.enabled]
        if not settings:
            return

        if context.config.has_ci_connection():
            self.workspace_path = self.get_workspace_path(context)
        else:
            self.workspace_path = os.path.join(os.getcwd(), "workspace")

        for index, setting in enumerate(settings):
            interval = max(setting.interval_hours, MIN_INTERVAL_HOURS) * 3600
            schedule(f"cleanup-{index}", interval, lambda s=setting: self.clean(context, s),
                     context.stop_event, logger, run_immediately=True)

    def clean(self, context, setting) -> None:
        locations = find_locations(setting.location, self.workspace_path)
        if not locations:
            return

        if setting.only_when_idle and not wait_for_idle(context, logger, "cleaning configured locations"):
            return

        cleanup_locations(locations, setting.exclusions, setting.mode, max(setting.ttl_hours, MIN_TTL_HOURS))
