"""Tests for the ConfigMap based lock."""

import threading
import time
import unittest

from arrears.errors import LockBusyError
from arrears.kubernetes.kinds import CONFIGMAPS
from arrears.kubernetes.lock import LOCK_LABEL, LOCK_OPERATION_LABEL, DistributedLock
from fakes import FakeConnection, server_error


class TestDistributedLock(unittest.TestCase):
    """Test cases for DistributedLock."""

    def setUp(self):
        """Set up the test."""
        self.connection = FakeConnection()
        self.configmaps = self.connection.resource(CONFIGMAPS)
        self.lock = DistributedLock(self.connection, "sealos-system", "namespace-controller-test", timeout=30)

    def test_lock_record(self):
        """Test that the lock ConfigMap describes its holder while held."""
        def check(ctx):
            record = self.configmaps.stored("sealos-system", "debt-suspend-ns-user1")
            self.assertIsNotNone(record)
            self.assertEqual(record["data"]["holder"], "namespace-controller-test")
            self.assertIn("timestamp", record["data"])
            self.assertEqual(record["metadata"]["labels"][LOCK_LABEL], "true")
            self.assertEqual(record["metadata"]["labels"][LOCK_OPERATION_LABEL], "suspend")
            self.assertIsNotNone(ctx.deadline)
            return "done"

        result = self.lock.with_lock("ns-user1", "suspend", check)

        self.assertEqual(result, "done")
        self.assertIsNone(self.configmaps.stored("sealos-system", "debt-suspend-ns-user1"))

    def test_busy(self):
        """Test that a held lock makes the second caller fail without running."""
        self.configmaps.add(
            {"metadata": {"name": "debt-suspend-ns-user1", "namespace": "sealos-system"}, "data": {}}
        )
        called = []

        with self.assertRaises(LockBusyError) as raised:
            self.lock.with_lock("ns-user1", "suspend", called.append)

        self.assertEqual(called, [])
        self.assertEqual(raised.exception.lock_name, "debt-suspend-ns-user1")
        # The other holder's lock is left in place
        self.assertIsNotNone(self.configmaps.stored("sealos-system", "debt-suspend-ns-user1"))

    def test_operations_lock_independently(self):
        """Test that suspend and resume of the same namespace use different locks."""
        inner = []

        def outer(ctx):
            self.lock.with_lock("ns-user1", "resume", lambda inner_ctx: inner.append(True))

        self.lock.with_lock("ns-user1", "suspend", outer)
        self.assertEqual(inner, [True])

    def test_released_on_error(self):
        """Test that the lock is released when the protected function fails."""
        def fail(ctx):
            raise ValueError("boom")

        with self.assertRaises(ValueError):
            self.lock.with_lock("ns-user1", "resume", fail)

        self.assertIsNone(self.configmaps.stored("sealos-system", "debt-resume-ns-user1"))

    def test_release_failure_is_logged(self):
        """Test that a failed release does not hide the result."""
        self.configmaps.fail("delete", server_error())

        with self.assertLogs("arrears.kubernetes.lock", level="ERROR"):
            self.assertEqual(self.lock.with_lock("ns-user1", "suspend", lambda ctx: 1), 1)

    def test_create_error_propagates(self):
        """Test that errors other than conflicts are not reported as a busy lock."""
        self.configmaps.fail("create", server_error())

        with self.assertRaises(Exception) as raised:
            self.lock.with_lock("ns-user1", "suspend", lambda ctx: None)
        self.assertNotIsInstance(raised.exception, LockBusyError)

    def test_mutual_exclusion(self):
        """Test that concurrent holders never overlap."""
        active = []
        overlaps = []
        runs = []
        busy = []
        guard = threading.Lock()

        def work(ctx):
            with guard:
                active.append(1)
                if len(active) > 1:
                    overlaps.append(True)
            time.sleep(0.01)
            with guard:
                active.pop()
                runs.append(1)

        def contender():
            for _ in range(10):
                try:
                    self.lock.with_lock("ns-user1", "suspend", work)
                except LockBusyError:
                    with guard:
                        busy.append(1)

        threads = [threading.Thread(target=contender) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(overlaps, [])
        self.assertEqual(len(runs) + len(busy), 40)
        self.assertGreater(len(runs), 0)


if __name__ == "__main__":
    unittest.main()
