#!/usr/bin/env python3
import sys
import threading
import unittest
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

# Import from project root
sys.path.insert(0, str(Path(__file__).parent.parent))
from jenkins_launcher.atomic import AtomicFlag
from jenkins_launcher.config import Config
from jenkins_launcher.environment.monitor import JenkinsNodeMonitor
from jenkins_launcher.errors import JenkinsError
from jenkins_launcher.jenkins import NodeStatus
from jenkins_launcher.modes.base import Status

ONLINE_IDLE = NodeStatus("node1", offline=False, idle=True, temporarily_offline=False)
ONLINE_BUSY = NodeStatus("node1", offline=False, idle=False, temporarily_offline=False)
OFFLINE = NodeStatus("node1", offline=True, idle=True, temporarily_offline=False)


class TestJenkinsNodeMonitor(unittest.TestCase):
    def setUp(self):
        self.mode = MagicMock()
        self.mode.status = Status.STARTED
        self.context = SimpleNamespace(
            config=Config(ci_host_url="http://jenkins:8080/", client_name="node1", monitor_state_max_failures=2),
            jenkins=MagicMock(),
            node_is_idle=AtomicFlag(True),
            stop_event=threading.Event(),
            configured_mode=lambda: self.mode,
        )
        self.monitor = JenkinsNodeMonitor()

    def _observe(self, *statuses):
        self.context.jenkins.get_node_status.side_effect = list(statuses)
        for _ in statuses:
            self.monitor.monitor(self.context)

    def test_offline_forces_reconnect(self):
        """One reconnect per max_failures consecutive offline observations"""
        with self.assertLogs("launcher.monitor", level="WARNING"):
            self._observe(OFFLINE, OFFLINE)
        self.assertEqual(self.mode.stop.call_count, 1)

        with self.assertLogs("launcher.monitor", level="WARNING"):
            self._observe(OFFLINE, OFFLINE)
        self.assertEqual(self.mode.stop.call_count, 2)

    def test_online_resets_counter(self):
        with self.assertLogs("launcher.monitor", level="WARNING"):
            self._observe(OFFLINE, ONLINE_IDLE, OFFLINE)
        self.mode.stop.assert_not_called()

    def test_idle_flag_follows_server(self):
        """The shared idle flag mirrors the idle state of an online node"""
        self._observe(ONLINE_BUSY)
        self.assertFalse(self.context.node_is_idle.get())
        self._observe(ONLINE_IDLE)
        self.assertTrue(self.context.node_is_idle.get())

    def test_unreachable_jenkins(self):
        """Failed requests force a reconnect after three times max_failures"""
        errors = [JenkinsError("connection refused")] * 6
        self.context.node_is_idle.set(False)

        with self.assertLogs("launcher.monitor", level="ERROR"):
            self._observe(*errors[:5])
        self.mode.stop.assert_not_called()
        self.assertTrue(self.context.node_is_idle.get())

        with self.assertLogs("launcher.monitor", level="ERROR"):
            self._observe(errors[5])
        self.mode.stop.assert_called_once_with()

    def test_zero_max_failures_treated_as_one(self):
        self.context.config.monitor_state_max_failures = 0
        with self.assertLogs("launcher.monitor", level="WARNING"):
            self._observe(OFFLINE)
        self.mode.stop.assert_called_once_with()

    def test_mode_not_started(self):
        """No status request while the mode is not running; the node counts as idle"""
        self.mode.status = Status.STOPPED
        self.context.node_is_idle.set(False)

        self.monitor.monitor(self.context)

        self.context.jenkins.get_node_status.assert_not_called()
        self.assertTrue(self.context.node_is_idle.get())

    @patch('jenkins_launcher.environment.monitor.schedule')
    def test_prepare_without_monitoring(self, mock_schedule):
        self.context.config.monitor_state_on_server = False
        self.context.node_is_idle.set(False)

        self.monitor.prepare(self.context)

        mock_schedule.assert_not_called()
        self.assertTrue(self.context.node_is_idle.get())

    @patch('jenkins_launcher.environment.monitor.schedule')
    def test_prepare_schedules_monitor(self, mock_schedule):
        self.monitor.prepare(self.context)
        args, _ = mock_schedule.call_args
        self.assertEqual(args[:2], ("node-monitor", 15))


if __name__ == '__main__':
    unittest.main()
