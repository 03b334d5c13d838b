import logging
import os
import threading
import time
from pathlib import Path
from typing import Optional, Union

from .errors import LauncherError

logger = logging.getLogger("launcher")

PID_NAME = "launcher.pid"


class PidFile:
    """
    Context manager guarding against two launchers in the same directory.

    The owner refreshes the file's modification time every few seconds; a PID
    file that was not refreshed recently is considered stale and taken over.
    """

    UPDATE_INTERVAL = 3.0
    STALE_AFTER = 5.0

    def __init__(self, path: Union[str, Path] = PID_NAME):
        self.path = Path(path)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def is_other_running(self) -> bool:
        try:
            modified = self.path.stat().st_mtime
            content = self.path.read_text().strip()
        except OSError:
            return False

        if time.time() - modified > self.STALE_AFTER:
            return False
        return content.isdigit() and int(content) != os.getpid()

    def acquire(self):
        if self.is_other_running():
            raise LauncherError("Another launcher is already running with the same configuration. Exiting...")

        self.path.write_text(str(os.getpid()))
        self._stop.clear()
        self._thread = threading.Thread(target=self._keep_alive, name="pid-file", daemon=True)
        self._thread.start()

    def _keep_alive(self):
        while not self._stop.wait(self.UPDATE_INTERVAL):
            try:
                if self.path.stat().st_size == 0:
                    return
                os.utime(self.path)
            except OSError as e:
                logger.warning(f"Stopped refreshing {self.path}: {e}")
                return

    def release(self):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(self.UPDATE_INTERVAL)
        self.path.unlink(missing_ok=True)

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
