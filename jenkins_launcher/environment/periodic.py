import logging

from ..scheduling import schedule, wait_for_idle
from .base import Preparer

logger = logging.getLogger("launcher.periodic")


class PeriodicRestarter(Preparer):
    """Restarts the client every N hours, optionally only while the node is idle."""

    name = "Periodic Client Restarter"

    def prepare(self, context) -> None:
        config = context.config
        if not config.periodic_restart_enabled or config.periodic_restart_interval_hours <= 0:
            return

        logger.info(f"Periodic restart is enabled, interval: {config.periodic_restart_interval_hours}h.")
        schedule("periodic-restart", config.periodic_restart_interval_hours * 3600, lambda: self.restart(context),
                 context.stop_event, logger)

    def restart(self, context) -> None:
        logger.info("Triggering periodic restart.")
        if context.config.periodic_restart_only_when_idle and not wait_for_idle(context, logger, "triggering a restart"):
            return
        # Stopping the mode leads to a restart by the launcher.
        context.configured_mode().stop()
