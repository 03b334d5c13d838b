#!/usr/bin/env python3
"""
Unit tests for the preparer orchestration.

Tests verify:
- Filtering by is_config_acceptable
- Sequential configure phase in registration order
- Concurrent prepare phase completing before run_preparers returns
- Propagation of fatal configuration errors
"""

import sys
import threading
import time
import unittest
from pathlib import Path
from types import SimpleNamespace

# Import from project root
sys.path.insert(0, str(Path(__file__).parent.parent))
from jenkins_launcher.environment import default_preparers
from jenkins_launcher.environment.base import Preparer, PreparerRegistry, run_preparers
from jenkins_launcher.environment.java import JavaLocator
from jenkins_launcher.errors import FatalConfigurationError


class RecordingPreparer(Preparer):
    def __init__(self, name, journal, accept=True, error=None, delay=0.0):
        self.name = name
        self.journal = journal
        self.accept = accept
        self.error = error
        self.delay = delay
        self.prepared = threading.Event()

    def is_config_acceptable(self, config):
        return self.accept

    def configure(self, context):
        self.journal.append(("configure", self.name, threading.current_thread().name))

    def prepare(self, context):
        time.sleep(self.delay)
        self.journal.append(("prepare", self.name))
        self.prepared.set()
        if self.error:
            raise self.error


def make_context(*preparers):
    registry = PreparerRegistry()
    for preparer in preparers:
        registry.register(preparer)
    return SimpleNamespace(config=object(), preparers=registry)


class TestRunPreparers(unittest.TestCase):
    def test_rejecting_preparers_skipped(self):
        """Only preparers accepting the config are configured and prepared"""
        journal = []
        preparers = [RecordingPreparer(f"p{i}", journal, accept=i % 2 == 0) for i in range(5)]

        accepted = run_preparers(make_context(*preparers))

        self.assertEqual([p.name for p in accepted], ["p0", "p2", "p4"])
        prepared = sorted(entry[1] for entry in journal if entry[0] == "prepare")
        self.assertEqual(prepared, ["p0", "p2", "p4"])

    def test_configure_sequential_in_order(self):
        """configure() runs on the calling thread in registration order"""
        journal = []
        preparers = [RecordingPreparer(name, journal) for name in ("c", "a", "b")]

        run_preparers(make_context(*preparers))

        configured = [entry for entry in journal if entry[0] == "configure"]
        self.assertEqual([entry[1] for entry in configured], ["c", "a", "b"])
        self.assertTrue(all(entry[2] == threading.current_thread().name for entry in configured))

    def test_all_prepared_before_return(self):
        """run_preparers returns only after every prepare() finished"""
        journal = []
        preparers = [RecordingPreparer(f"p{i}", journal, delay=0.05 * i) for i in range(4)]

        run_preparers(make_context(*preparers))

        self.assertTrue(all(p.prepared.is_set() for p in preparers))

    def test_fatal_error_propagates_after_barrier(self):
        """A fatal error is raised once all other preparers are done"""
        journal = []
        failing = RecordingPreparer("fatal", journal, error=FatalConfigurationError("no java"))
        slow = RecordingPreparer("slow", journal, delay=0.1)

        with self.assertLogs("launcher.env", level="ERROR"):
            with self.assertRaises(FatalConfigurationError):
                run_preparers(make_context(failing, slow))

        self.assertTrue(slow.prepared.is_set())

    def test_other_errors_logged(self):
        journal = []
        failing = RecordingPreparer("broken", journal, error=RuntimeError("boom"))

        with self.assertLogs("launcher.env", level="ERROR") as cm:
            accepted = run_preparers(make_context(failing))

        self.assertEqual(accepted, [failing])
        self.assertIn("broken", cm.output[0])

    def test_no_preparers(self):
        self.assertEqual(run_preparers(make_context()), [])


class TestDefaultPreparers(unittest.TestCase):
    def test_registration_order(self):
        """Java is located first so later preparers can rely on it"""
        registry = default_preparers()
        preparers = list(registry)

        self.assertEqual(len(registry), 9)
        self.assertIsInstance(preparers[0], JavaLocator)
        names = [p.name for p in preparers]
        self.assertLess(names.index("SSH Tunnel Establisher"), names.index("Jenkins Client Downloader"))


if __name__ == '__main__':
    unittest.main()
