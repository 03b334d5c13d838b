import threading
from pathlib import Path
from typing import Dict, List, Optional

from .atomic import AtomicFlag
from .config import Config
from .environment.base import PreparerRegistry
from .jenkins import JenkinsClient
from .modes.base import ModeListenerRegistry, ModeRegistry


class LauncherContext:
    """
    Shared state of one launcher process.

    Created once at start-up and handed to every preparer and mode. The config
    and the argument collections are mutated only during the sequential
    'configure' phase of the preparers (and by the SSH tunnel while it rewires
    the connection on STARTING).
    """

    def __init__(self, config: Config, modes=None, listeners=None, preparers=None,
                 jenkins: Optional[JenkinsClient] = None):
        self.config = config
        self.modes = modes if modes is not None else ModeRegistry()
        self.listeners = listeners if listeners is not None else ModeListenerRegistry()
        self.preparers = preparers if preparers is not None else PreparerRegistry()
        self.jenkins = jenkins if jenkins is not None else JenkinsClient(config)

        # True while Jenkins reports the node as idle (or nothing can be monitored).
        self.node_is_idle = AtomicFlag(True)
        # Set once when the launcher shuts down; background tasks watch it.
        self.stop_event = threading.Event()

        self.java: str = "java"
        self.client_jar: Path = Path("slave.jar")
        # JVM options contributed by preparers, placed before the configured ones.
        self.java_args: List[str] = []
        # JNLP arguments that override the server's descriptor (name -> value).
        self.jnlp_args: Dict[str, str] = {}

    def configured_mode(self):
        return self.modes.get_configured(self.config)
