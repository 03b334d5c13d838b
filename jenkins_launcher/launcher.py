import faulthandler
import logging
import signal
import sys
import threading
import time
from typing import Any, Optional

from .config import CONFIG_NAME, Config
from .context import LauncherContext
from .environment import default_preparers, run_preparers
from .errors import FatalConfigurationError
from .modes import default_modes, run_configured_mode

logger = logging.getLogger("launcher")


class SignalHandler:
    """
    Context manager for handling system signals (SIGINT, SIGTERM).
    Restores original handlers upon exit.
    """
    def __init__(self):
        self.shutdown_event = threading.Event()
        self._original_sigint = None
        self._original_sigterm = None

    @property
    def shutdown_requested(self) -> bool:
        return self.shutdown_event.is_set()

    def __enter__(self):
        self._original_sigint = signal.getsignal(signal.SIGINT)
        self._original_sigterm = signal.getsignal(signal.SIGTERM)

        signal.signal(signal.SIGINT, self._handler)
        signal.signal(signal.SIGTERM, self._handler)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        signal.signal(signal.SIGINT, self._original_sigint)
        signal.signal(signal.SIGTERM, self._original_sigterm)

    def _handler(self, signum: int, frame: Any):
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.info(f"Received signal {name}. Shutting down...")

        self.shutdown_event.set()


class KeyboardListener(threading.Thread):
    """Reads commands from an interactive terminal: 'r' restarts the client, 'd' dumps all thread stacks."""

    def __init__(self, context: LauncherContext, stream=None):
        super().__init__(name="keyboard", daemon=True)
        self.context = context
        self.stream = stream or sys.stdin

    def run(self):
        logger.info("Listening for keys: [D+Return]: Print Stacktrace | [R+Return]: Restart client.")
        for line in self.stream:
            command = line.strip().lower()
            if command == "r":
                logger.info("Restart requested from keyboard.")
                self.context.configured_mode().stop()
            elif command == "d":
                faulthandler.dump_traceback(file=sys.stdout, all_threads=True)


class Launcher:
    """
    Prepares the environment and keeps the configured mode running.
    Restarts are delayed by restart_count * sleep_seconds_between_failures;
    the count resets when the previous start is long enough ago.
    """

    RESET_RESTART_COUNT_AFTER = 2 * 3600

    def __init__(self, config: Config, persist: bool = False, context: Optional[LauncherContext] = None):
        self.context = context or LauncherContext(config, modes=default_modes(), preparers=default_preparers())
        self.persist = persist

    @property
    def config(self) -> Config:
        return self.context.config

    def save_config_if_required(self):
        if self.config.needs_save or self.persist:
            self.config.save(CONFIG_NAME)

    def prepare(self):
        """Runs all preparers and verifies the selected mode accepts the configuration."""
        mode = self.context.configured_mode()

        run_preparers(self.context)

        acceptable = mode.is_config_acceptable(self.context)
        self.save_config_if_required()

        if not acceptable:
            raise FatalConfigurationError(f"Mode '{mode.name}' cannot run with the current configuration.")

    def run(self):
        """Runs the configured mode until a shutdown signal arrives."""
        with SignalHandler() as handler:
            if sys.stdin is not None and sys.stdin.isatty():
                KeyboardListener(self.context).start()

            try:
                self._run_loop(handler.shutdown_event)
            finally:
                self.context.stop_event.set()

        logger.info("Launcher stopped.")

    def _run_loop(self, shutdown: threading.Event):
        restart_count = 0
        last_start = time.monotonic()

        while run_configured_mode(self.context, shutdown):
            logger.info("::  Restarting Jenkins Client  ::")

            if time.monotonic() - last_start > self.RESET_RESTART_COUNT_AFTER:
                restart_count = 0

            if (sleep_time := restart_count * self.config.sleep_seconds_between_failures) > 0:
                logger.info(f"Sleeping {sleep_time} seconds before restarting the client.")
                if shutdown.wait(sleep_time):
                    break

            restart_count += 1
            last_start = time.monotonic()
