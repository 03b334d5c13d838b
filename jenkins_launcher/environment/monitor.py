import logging

from ..errors import JenkinsError
from ..modes.base import Status
from ..scheduling import schedule
from .base import Preparer

logger = logging.getLogger("launcher.monitor")


class JenkinsNodeMonitor(Preparer):
    """
    Compares the local mode status with the node status reported by Jenkins
    and forces a reconnect when the node stays offline on the server side.

    Two counters are kept: 'offline_count' counts observations where Jenkins
    answered but reported the node offline, 'unreachable_count' counts failed
    status requests. A reconnect is forced when offline_count reaches the
    configured maximum of failures or unreachable_count reaches three times
    that value. Any online observation resets both counters.

    Also maintains the shared idle flag used by the restart policies.
    """

    name = "Jenkins Node Monitor"

    UNREACHABLE_FACTOR = 3

    def __init__(self):
        self.offline_count = 0
        self.unreachable_count = 0
        self.online_shown = False

    def is_config_acceptable(self, config) -> bool:
        if config.monitor_state_on_server and not config.has_ci_connection():
            logger.warning("No Jenkins URI defined. Cannot monitor this node within Jenkins.")
            return False
        return True

    def prepare(self, context) -> None:
        config = context.config
        if not config.monitor_state_on_server:
            # Without monitoring the node is always considered idle.
            context.node_is_idle.set(True)
            return

        schedule("node-monitor", config.monitor_interval_seconds, lambda: self.monitor(context),
                 context.stop_event, logger)

    def monitor(self, context) -> None:
        config = context.config
        mode = context.configured_mode()

        if mode.status != Status.STARTED:
            context.node_is_idle.set(True)
            self.offline_count = 0
            self.unreachable_count = 0
            if self.online_shown:
                logger.warning("Node went OFFLINE locally.")
                self.online_shown = False
            return

        max_failures = max(1, config.monitor_state_max_failures)

        try:
            status = context.jenkins.get_node_status(config.client_name)
        except JenkinsError as e:
            logger.error(f"Failed to monitor node {config.client_name} using {config.ci_host_url}. Cause: {e}")
            context.node_is_idle.set(True)
            self.unreachable_count += 1
            if self.unreachable_count >= self.UNREACHABLE_FACTOR * max_failures:
                self.unreachable_count = 0
                self.force_reconnect(context, "Jenkins cannot be reached")
            return

        if not status.offline:
            context.node_is_idle.set(status.idle)
            self.offline_count = 0
            self.unreachable_count = 0
            if not self.online_shown:
                logger.info("Node is online in Jenkins.")
                self.online_shown = True
            return

        context.node_is_idle.set(True)
        self.online_shown = False
        self.offline_count += 1
        logger.warning(f"Node is OFFLINE in Jenkins ({self.offline_count}/{max_failures}).")

        if self.offline_count >= max_failures:
            self.offline_count = 0
            self.force_reconnect(context, "This node appears dead in Jenkins")

    def force_reconnect(self, context, reason: str) -> None:
        mode = context.configured_mode()
        if mode.status == Status.STARTED:
            logger.warning(f"{reason}, forcing a reconnect.")
            mode.stop()
