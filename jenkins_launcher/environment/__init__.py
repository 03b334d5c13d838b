from .base import Preparer, PreparerRegistry, run_preparers
from .cleanup import LocationCleaner
from .download import JenkinsClientDownloader
from .gc import FullGCInvoker
from .java import JavaLocator
from .monitor import JenkinsNodeMonitor
from .naming import NodeNameNormalizer
from .outofmemory import OutOfMemoryErrorRestarter
from .periodic import PeriodicRestarter
from .sshtunnel import SSHTunnelEstablisher


def default_preparers() -> PreparerRegistry:
    """
    Returns a registry with all preparers of the launcher.
    The order is the order of the sequential configure phase and of the mode
    listeners: the tunnel rewires the Jenkins URL before the client jar is fetched.
    """
    registry = PreparerRegistry()
    for preparer in (
        JavaLocator(),
        NodeNameNormalizer(),
        SSHTunnelEstablisher(),
        JenkinsClientDownloader(),
        JenkinsNodeMonitor(),
        PeriodicRestarter(),
        OutOfMemoryErrorRestarter(),
        FullGCInvoker(),
        LocationCleaner(),
    ):
        registry.register(preparer)
    return registry
