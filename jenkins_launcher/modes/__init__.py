from .base import Mode, ModeListenerRegistry, ModeRegistry, Status, run_configured_mode
from .client import ClientMode
from .server import ServerMode


def default_modes() -> ModeRegistry:
    """Returns a registry with all run modes of the launcher."""
    registry = ModeRegistry()
    registry.register(ClientMode())
    registry.register(ServerMode())
    return registry
