"""
Jenkins Client Launcher

Keeps a Jenkins JNLP client (slave.jar) connected to its CI server, restarting it
when it dies, when it is reported offline, when it runs out of memory or
periodically, and tunnels its traffic through SSH when configured to do so.
"""

__version__ = "0.3.0"

APP_NAME = "Jenkins Client Launcher"
