import logging
import math
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger("launcher.env")


class PeriodicTask(threading.Thread):
    """
    Runs 'action' every 'interval' seconds until 'stop_event' is set.

    Runs happen at a fixed rate: the time an action takes does not shift the
    following runs, and runs missed while an action was busy are skipped.
    Exceptions raised by the action are logged and never end the loop.
    """

    def __init__(self, name: str, interval: float, action: Callable[[], None],
                 stop_event: threading.Event, task_logger: Optional[logging.Logger] = None,
                 run_immediately: bool = False, delay: Optional[float] = None):
        super().__init__(name=name, daemon=True)
        self.interval = interval
        self.action = action
        self.stop_event = stop_event
        self.log = task_logger or logger
        if run_immediately:
            delay = 0.0
        self.delay = interval if delay is None else delay

    def _execute(self):
        try:
            self.action()
        except Exception:
            self.log.exception(f"Task '{self.name}' failed.")

    def run(self):
        next_run = time.monotonic() + self.delay
        while not self.stop_event.wait(max(0.0, next_run - time.monotonic())):
            self._execute()

            next_run += self.interval
            now = time.monotonic()
            if next_run < now:
                skipped = math.ceil((now - next_run) / self.interval)
                self.log.debug(f"Task '{self.name}' skipped {skipped} run(s).")
                next_run += skipped * self.interval


def schedule(name: str, interval: float, action: Callable[[], None], stop_event: threading.Event,
             task_logger: Optional[logging.Logger] = None, run_immediately: bool = False,
             delay: Optional[float] = None) -> PeriodicTask:
    """Creates and starts a periodic task. The first run happens after 'delay' (default: one interval)."""
    task = PeriodicTask(name, interval, action, stop_event, task_logger, run_immediately, delay)
    task.start()
    return task


def wait_for_idle(context, task_logger: logging.Logger, reason: str) -> bool:
    """
    Blocks until the node is reported idle.
    Returns False when the launcher shuts down while waiting.
    """
    if context.node_is_idle.get():
        return True

    task_logger.info(f"Waiting for the node to become idle before {reason}.")
    while not context.node_is_idle.get():
        if context.stop_event.wait(context.config.idle_poll_seconds):
            return False
    return True
