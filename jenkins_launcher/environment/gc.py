import logging

from ..errors import JenkinsError
from ..modes.base import Status
from ..scheduling import schedule
from .base import Preparer

logger = logging.getLogger("launcher.gc")


class FullGCInvoker(Preparer):
    """
    Periodically asks the client JVM to run a full GC via the Jenkins script console,
    returning unused heap to the OS.
    One schedule applies while the node is busy, another one while it is idle.
    """

    name = "Full GC Invoker"

    def is_config_acceptable(self, config) -> bool:
        if config.force_full_gc and not config.has_ci_connection():
            logger.warning("No Jenkins URI defined. System.gc() cannot be called inside the Jenkins client.")
            return False
        return True

    def prepare(self, context) -> None:
        config = context.config
        if not config.force_full_gc:
            return

        logger.info("Periodic forced full GC is enabled.")

        if config.force_full_gc_interval_minutes > 0 and not config.force_full_gc_only_when_idle:
            schedule("full-gc", config.force_full_gc_interval_minutes * 60,
                     lambda: self.invoke_if(context, expected_idle=False), context.stop_event, logger)

        if config.force_full_gc_idle_interval_minutes > 0:
            schedule("full-gc-idle", config.force_full_gc_idle_interval_minutes * 60,
                     lambda: self.invoke_if(context, expected_idle=True), context.stop_event, logger)

    def invoke_if(self, context, expected_idle: bool) -> None:
        if context.node_is_idle.get() != expected_idle:
            return
        if context.configured_mode().status != Status.STARTED:
            return
        self.invoke_system_gc(context)

    def invoke_system_gc(self, context) -> None:
        name = context.config.client_name
        try:
            context.jenkins.invoke_full_gc(name)
            logger.debug(f"Invoked full GC on node '{name}'.")
        except JenkinsError as e:
            logger.error(f"Failed invoking full GC on node '{name}'. Cause: {e}")
