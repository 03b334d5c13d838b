import logging
import os
from pathlib import Path
from typing import Optional, Union

from ..scheduling import schedule, wait_for_idle
from .base import Preparer

logger = logging.getLogger("launcher.oom")

MARKER_NAME = "~jvm-out-of-memory.marker"


class OutOfMemoryErrorRestarter(Preparer):
    """
    Restarts the client after the JVM reported an OutOfMemoryError.

    The JVM runs a shell command on OOM ('-XX:OnOutOfMemoryError') that writes
    a marker file; a task checks for the marker every few seconds.
    """

    name = "OOM-Error Client Restarter"

    CHECK_INTERVAL = 5

    def __init__(self, marker: Optional[Union[str, Path]] = None):
        self.marker = Path(marker or MARKER_NAME).absolute()

    def trigger_command(self) -> str:
        if os.name == "nt":
            if comspec := os.getenv("ComSpec"):
                return f'"{comspec}" /c echo 1 > "{self.marker}"'
            return ""
        return f'/bin/echo 1 > "{self.marker}"'

    def configure(self, context) -> None:
        if not context.config.oom_restart_enabled:
            return
        if command := self.trigger_command():
            context.java_args.append(f"-XX:OnOutOfMemoryError={command}")
        else:
            logger.warning("No shell available to report OutOfMemory errors, OOM restarts are disabled.")

    def prepare(self, context) -> None:
        if not context.config.oom_restart_enabled:
            return

        # A marker left over from a previous run must not trigger a restart.
        self.marker.unlink(missing_ok=True)
        schedule("oom-restart", self.CHECK_INTERVAL, lambda: self.check(context), context.stop_event, logger)

    def oom_triggered(self) -> bool:
        """Consumes the marker file; True when it existed."""
        try:
            self.marker.unlink()
            return True
        except FileNotFoundError:
            return False

    def check(self, context) -> None:
        if not self.oom_triggered():
            return

        logger.warning("A client restart is now triggered as consequence to an OutOfMemory error inside the JVM.")
        if context.config.oom_restart_only_when_idle and not wait_for_idle(context, logger, "triggering a restart"):
            return
        context.configured_mode().stop()
