"""
Run modes and their lifecycle.

A mode moves forward through NONE -> STARTING -> STARTED -> STOPPING -> STOPPED
within one run cycle and may be started again once STOPPED. Starting happens on
a dedicated execution thread; stopping is a two-phase rendezvous: stop() hands
the request to the execution thread and returns after it reported STOPPED.
"""

import logging
import threading
from enum import IntEnum
from typing import Callable, Dict, Iterator, List, Optional

from ..atomic import AtomicCounter
from ..errors import FatalConfigurationError, LauncherError, ModeStateError

logger = logging.getLogger("launcher")


class Status(IntEnum):
    """Lifecycle status of a run mode."""
    NONE = 0
    STARTING = 1
    STARTED = 2
    STOPPING = 3
    STOPPED = 4


ModeListener = Callable[["Mode", Status, object], None]


class Mode:
    """Base class of all run modes."""

    name: str = ""

    def __init__(self):
        self._status = AtomicCounter(Status.NONE)
        self._stop_requested = threading.Event()
        self._stopped = threading.Event()
        self._start_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    @property
    def status(self) -> Status:
        return Status(self._status.get())

    def is_config_acceptable(self, context) -> bool:
        return True

    def start(self, context) -> None:
        """Starts execution on a new thread and returns immediately."""
        with self._start_lock:
            current = self.status
            if current not in (Status.NONE, Status.STOPPED):
                raise ModeStateError(
                    f"Cannot start mode '{self.name}' whose status is {current.name}, expected NONE or STOPPED."
                )

            # A stop() observing STARTING must find the events of this cycle.
            self._stop_requested.clear()
            self._stopped.clear()
            if not self._status.compare_and_set(current, Status.STARTING):
                self._stopped.set()
                raise ModeStateError(f"Mode '{self.name}' changed its status while starting.")

            self._thread = threading.Thread(target=self._run, args=(context,), name=f"mode-{self.name}", daemon=True)
            self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Requests the mode to stop and waits until it did.
        Does nothing when the mode is not running.
        """
        while True:
            current = self.status
            if current in (Status.NONE, Status.STOPPED):
                return
            if current == Status.STOPPING or self._status.compare_and_set(current, Status.STOPPING):
                break

        self._stop_requested.set()

        # The execution thread itself cannot wait for its own completion.
        if threading.current_thread() is not self._thread:
            self._stopped.wait(timeout)

    def wait_stopped(self, timeout: Optional[float] = None) -> bool:
        """Returns True once the mode is STOPPED (or was never started)."""
        if self.status == Status.NONE:
            return True
        return self._stopped.wait(timeout)

    def wait_for_stop_request(self, timeout: Optional[float] = None) -> bool:
        return self._stop_requested.wait(timeout)

    def _set_started(self) -> bool:
        """Moves STARTING to STARTED; False when a stop was requested meanwhile."""
        return self._status.compare_and_set(Status.STARTING, Status.STARTED)

    def _run(self, context) -> None:
        try:
            self.execute(context)
        except Exception:
            logger.exception(f"Mode '{self.name}' failed.")
        finally:
            self._status.set(Status.STOPPED)
            self._stopped.set()

    def execute(self, context) -> None:
        """Runs the mode until it ends or wait_for_stop_request() returns True."""
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r}, status={self.status.name})"


class ModeRegistry:
    """All run modes known to this process, by name."""

    def __init__(self):
        self._modes: Dict[str, Mode] = {}

    def register(self, mode: Mode) -> Mode:
        if mode.name in self._modes:
            raise ValueError(f"Mode '{mode.name}' is already registered.")
        self._modes[mode.name] = mode
        return mode

    def get(self, name: str) -> Optional[Mode]:
        return self._modes.get(name)

    def get_configured(self, config) -> Mode:
        if mode := self._modes.get(config.run_mode):
            return mode
        raise FatalConfigurationError(
            f"The configured mode '{config.run_mode}' is not implemented. "
            f"Available modes: {', '.join(self._modes)}"
        )

    def __iter__(self) -> Iterator[Mode]:
        return iter(list(self._modes.values()))

    def __len__(self) -> int:
        return len(self._modes)


class ModeListenerRegistry:
    """
    Listeners notified before a mode starts, after it started and after it stopped.
    Listeners are called synchronously in registration order.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._listeners: List[ModeListener] = []

    def register(self, listener: ModeListener) -> ModeListener:
        with self._lock:
            self._listeners.append(listener)
        return listener

    def notify(self, mode: Mode, next_status: Status, config) -> None:
        with self._lock:
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(mode, next_status, config)
            except FatalConfigurationError:
                raise
            except Exception:
                logger.exception(f"Mode listener {listener!r} failed on {next_status.name}.")

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)


def run_configured_mode(context, shutdown: threading.Event, poll_interval: float = 0.5) -> bool:
    """
    Runs the configured mode until it stops.
    Returns True when the mode should be restarted, False when the launcher
    was asked to shut down or the mode failed to start.
    """
    mode = context.configured_mode()
    config = context.config

    logger.info(f"Starting mode {mode.name}")
    context.listeners.notify(mode, Status.STARTING, config)

    try:
        mode.start(context)
    except LauncherError as e:
        logger.error(f"Failed to start mode '{mode.name}'; Cause: {e}")
        context.listeners.notify(mode, Status.STOPPED, config)
        return False

    try:
        context.listeners.notify(mode, Status.STARTED, config)
        logger.info(f"STARTED mode {mode.name}")

        while not mode.wait_stopped(poll_interval):
            if shutdown.is_set():
                logger.info(f"Shutdown requested, stopping mode {mode.name}...")
                mode.stop()
    finally:
        context.listeners.notify(mode, Status.STOPPED, config)

    logger.info(f"STOPPED mode {mode.name}")
    return not shutdown.is_set()
