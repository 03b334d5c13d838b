#!/usr/bin/env python3
"""
Unit tests for the run mode lifecycle.

Tests verify:
- Status transitions of a mode across start/stop cycles
- Mode and listener registries
- The run cycle driven by run_configured_mode
"""

import sys
import threading
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

# Import from project root
sys.path.insert(0, str(Path(__file__).parent.parent))
from jenkins_launcher.config import Config
from jenkins_launcher.context import LauncherContext
from jenkins_launcher.errors import FatalConfigurationError, LauncherError, ModeStateError
from jenkins_launcher.modes import default_modes
from jenkins_launcher.modes.base import (
    Mode, ModeListenerRegistry, ModeRegistry, Status, run_configured_mode,
)


class BlockingMode(Mode):
    """Runs until a stop is requested"""
    name = "blocking"

    def __init__(self):
        super().__init__()
        self.running = threading.Event()

    def execute(self, context):
        if self._set_started():
            self.running.set()
            self.wait_for_stop_request()


class ExitingMode(Mode):
    """Ends on its own right after it started"""
    name = "exiting"

    def execute(self, context):
        self._set_started()


class BrokenMode(Mode):
    name = "broken"

    def start(self, context):
        raise LauncherError("cannot start")


def make_context(mode):
    modes = ModeRegistry()
    modes.register(mode)
    config = Config(run_mode=mode.name)
    return LauncherContext(config, modes=modes, jenkins=MagicMock())


class TestModeLifecycle(unittest.TestCase):
    def test_initial_status(self):
        self.assertEqual(BlockingMode().status, Status.NONE)

    def test_start_and_stop(self):
        """A started mode reaches STARTED and is STOPPED once stop() returns"""
        mode = BlockingMode()
        mode.start(None)
        self.assertTrue(mode.running.wait(5))
        self.assertEqual(mode.status, Status.STARTED)

        mode.stop(timeout=5)

        self.assertEqual(mode.status, Status.STOPPED)
        self.assertTrue(mode.wait_stopped(0))

    def test_start_while_running_fails(self):
        """Starting a running mode is a programming error"""
        mode = BlockingMode()
        mode.start(None)
        try:
            with self.assertRaises(ModeStateError):
                mode.start(None)
        finally:
            mode.stop(timeout=5)

    def test_restart_after_stop(self):
        """A STOPPED mode may be started again"""
        mode = BlockingMode()
        for _ in range(2):
            mode.running.clear()
            mode.start(None)
            self.assertTrue(mode.running.wait(5))
            mode.stop(timeout=5)
            self.assertEqual(mode.status, Status.STOPPED)

    def test_restart_resets_stopped_before_starting(self):
        """Once STARTING is visible, a stop() cannot see the STOPPED signal of the previous cycle"""
        mode = BlockingMode()
        mode.start(None)
        self.assertTrue(mode.running.wait(5))
        mode.stop(timeout=5)

        seen_stopped = []
        compare_and_set = mode._status.compare_and_set

        def record_on_starting(expected, value):
            changed = compare_and_set(expected, value)
            if changed and value == Status.STARTING:
                seen_stopped.append(mode.wait_stopped(0))
            return changed

        mode.running.clear()
        with patch.object(mode._status, "compare_and_set", side_effect=record_on_starting):
            mode.start(None)
        self.assertTrue(mode.running.wait(5))
        mode.stop(timeout=5)

        self.assertEqual(seen_stopped, [False])
        self.assertEqual(mode.status, Status.STOPPED)

    def test_stop_without_start_is_noop(self):
        mode = BlockingMode()
        mode.stop(timeout=1)
        self.assertEqual(mode.status, Status.NONE)

    def test_mode_ending_by_itself(self):
        mode = ExitingMode()
        mode.start(None)
        self.assertTrue(mode.wait_stopped(5))
        self.assertEqual(mode.status, Status.STOPPED)

    def test_failing_execute_still_stops(self):
        """Exceptions inside execute() end in STOPPED"""
        mode = ExitingMode()
        mode.execute = MagicMock(side_effect=RuntimeError("boom"))
        with self.assertLogs("launcher", level="ERROR"):
            mode.start(None)
            self.assertTrue(mode.wait_stopped(5))
        self.assertEqual(mode.status, Status.STOPPED)


class TestModeRegistry(unittest.TestCase):
    def test_duplicate_name_rejected(self):
        registry = ModeRegistry()
        registry.register(BlockingMode())
        with self.assertRaises(ValueError):
            registry.register(BlockingMode())

    def test_get_configured(self):
        registry = ModeRegistry()
        mode = registry.register(BlockingMode())
        self.assertIs(registry.get_configured(Config(run_mode="blocking")), mode)

    def test_unknown_mode_lists_available(self):
        """Unknown run modes are a fatal configuration error naming the known modes"""
        registry = ModeRegistry()
        registry.register(BlockingMode())
        registry.register(ExitingMode())
        with self.assertRaises(FatalConfigurationError) as cm:
            registry.get_configured(Config(run_mode="missing"))
        self.assertIn("blocking, exiting", str(cm.exception))

    def test_default_modes(self):
        registry = default_modes()
        self.assertEqual(sorted(mode.name for mode in registry), ["client", "ssh-server"])


class TestModeListenerRegistry(unittest.TestCase):
    def test_listeners_called_in_registration_order(self):
        registry = ModeListenerRegistry()
        calls = []
        registry.register(lambda mode, status, config: calls.append(("first", status)))
        registry.register(lambda mode, status, config: calls.append(("second", status)))

        registry.notify(BlockingMode(), Status.STARTING, None)

        self.assertEqual(calls, [("first", Status.STARTING), ("second", Status.STARTING)])

    def test_failing_listener_does_not_stop_others(self):
        registry = ModeListenerRegistry()
        second = MagicMock()
        registry.register(MagicMock(side_effect=RuntimeError("boom")))
        registry.register(second)

        with self.assertLogs("launcher", level="ERROR"):
            registry.notify(BlockingMode(), Status.STOPPED, None)

        second.assert_called_once()

    def test_fatal_configuration_error_propagates(self):
        registry = ModeListenerRegistry()
        registry.register(MagicMock(side_effect=FatalConfigurationError("no jar")))
        with self.assertRaises(FatalConfigurationError):
            registry.notify(BlockingMode(), Status.STARTING, None)


class TestRunConfiguredMode(unittest.TestCase):
    def _record(self, context):
        statuses = []
        context.listeners.register(lambda mode, status, config: statuses.append(status))
        return statuses

    def test_mode_ending_requests_restart(self):
        """A mode that ends by itself is restarted, listeners see the full cycle"""
        context = make_context(ExitingMode())
        statuses = self._record(context)

        restart = run_configured_mode(context, threading.Event(), poll_interval=0.01)

        self.assertTrue(restart)
        self.assertEqual(statuses, [Status.STARTING, Status.STARTED, Status.STOPPED])

    def test_shutdown_stops_mode(self):
        """A shutdown request stops the running mode and ends the cycle"""
        mode = BlockingMode()
        context = make_context(mode)
        shutdown = threading.Event()
        shutdown.set()

        restart = run_configured_mode(context, shutdown, poll_interval=0.01)

        self.assertFalse(restart)
        self.assertEqual(mode.status, Status.STOPPED)

    def test_start_failure(self):
        """STOPPED is notified even when the mode fails to start"""
        context = make_context(BrokenMode())
        statuses = self._record(context)

        with self.assertLogs("launcher", level="ERROR"):
            restart = run_configured_mode(context, threading.Event(), poll_interval=0.01)

        self.assertFalse(restart)
        self.assertEqual(statuses, [Status.STARTING, Status.STOPPED])


if __name__ == '__main__':
    unittest.main()
