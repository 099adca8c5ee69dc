"""Tests for contexts and concurrent task execution."""

import threading
import time
import unittest

from arrears.concurrency import OperationContext, run_concurrently
from arrears.errors import OperationCancelled


class TestOperationContext(unittest.TestCase):
    """Test cases for OperationContext."""

    def test_background_never_expires(self):
        """Test that a background context has no deadline."""
        ctx = OperationContext.background()
        self.assertIsNone(ctx.remaining())
        self.assertIsNone(ctx.request_timeout())
        ctx.check()

    def test_deadline(self):
        """Test that an expired context refuses further calls."""
        ctx = OperationContext.background().with_timeout(0)
        with self.assertRaises(OperationCancelled):
            ctx.check()

        ctx = OperationContext.background().with_timeout(60)
        self.assertGreater(ctx.request_timeout(), 0)
        self.assertLessEqual(ctx.remaining(), 60)

    def test_child_deadline_capped_by_parent(self):
        """Test that a child never outlives its parent."""
        parent = OperationContext.background().with_timeout(5)
        child = parent.with_timeout(100)
        self.assertEqual(child.deadline, parent.deadline)

    def test_cancellation_propagates_down(self):
        """Test that cancelling a parent cancels its children but not the reverse."""
        parent = OperationContext.background()
        child = parent.child()
        grandchild = child.with_timeout(60)

        child.cancel()
        self.assertTrue(grandchild.cancelled)
        self.assertFalse(parent.cancelled)

        other = parent.child()
        parent.cancel()
        self.assertTrue(other.cancelled)
        with self.assertRaises(OperationCancelled):
            other.check()


class TestRunConcurrently(unittest.TestCase):
    """Test cases for run_concurrently."""

    def test_runs_all_tasks(self):
        """Test that every task runs with a context derived from the parent."""
        seen = []
        lock = threading.Lock()

        def task(ctx):
            with lock:
                seen.append(ctx)

        run_concurrently(OperationContext.background(), {"a": task, "b": task, "c": task})
        self.assertEqual(len(seen), 3)

    def test_empty(self):
        """Test that no tasks is a no-op."""
        run_concurrently(OperationContext.background(), {})

    def test_first_error_cancels_siblings(self):
        """Test that a failing task cancels the others and its error is raised."""
        started = threading.Event()
        observed = {}

        def failing(ctx):
            started.wait(5)
            raise ValueError("boom")

        def waiting(ctx):
            started.set()
            deadline = time.monotonic() + 5
            while time.monotonic() < deadline:
                if ctx.cancelled:
                    observed["cancelled"] = True
                    ctx.check()
                time.sleep(0.01)

        parent = OperationContext.background()
        with self.assertRaises(ValueError) as raised:
            run_concurrently(parent, {"failing": failing, "waiting": waiting})

        self.assertEqual(str(raised.exception), "boom")
        self.assertTrue(observed.get("cancelled"))
        self.assertFalse(parent.cancelled)

    def test_without_cancellation(self):
        """Test that cancel_on_error=False lets the other tasks finish."""
        finished = threading.Event()
        release = threading.Event()

        def failing(ctx):
            release.set()
            raise RuntimeError("failed to delete jobs")

        def slow(ctx):
            release.wait(5)
            time.sleep(0.05)
            ctx.check()
            finished.set()

        with self.assertRaises(RuntimeError):
            run_concurrently(OperationContext.background(), {"jobs": failing, "apps": slow}, cancel_on_error=False)
        self.assertTrue(finished.is_set())

    def test_cancelled_parent(self):
        """Test that tasks of a cancelled parent stop at their first check."""
        parent = OperationContext.background()
        parent.cancel()

        with self.assertRaises(OperationCancelled):
            run_concurrently(parent, {"a": lambda ctx: ctx.check()})


if __name__ == "__main__":
    unittest.main()
