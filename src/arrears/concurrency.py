"""Deadlines, cancellation and fan-out helpers.

An OperationContext carries the deadline of the lock-protected section and a
cancellation flag shared by sibling tasks. Every Kubernetes call checks it
before running and derives its request timeout from it.
"""

import logging
import threading
import time
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor, as_completed

from arrears.errors import OperationCancelled

logger = logging.getLogger(__name__)


class OperationContext:
    """Deadline and cancellation scope for one operation.

    Child contexts inherit the parent's deadline and are cancelled with it,
    while cancelling a child leaves the parent untouched.
    """

    def __init__(self, deadline: float | None = None, parent: "OperationContext | None" = None):
        """Initialize the context.

        Args:
            deadline: Absolute time.monotonic() value after which the context expires.
            parent: Context whose deadline and cancellation are inherited.
        """
        if parent is not None and parent.deadline is not None:
            deadline = parent.deadline if deadline is None else min(deadline, parent.deadline)
        self.deadline = deadline
        self._parent = parent
        self._cancelled = threading.Event()

    @classmethod
    def background(cls) -> "OperationContext":
        """Create a context without deadline."""
        return cls()

    def with_timeout(self, seconds: float) -> "OperationContext":
        """Create a child context expiring after the given number of seconds."""
        return OperationContext(deadline=time.monotonic() + seconds, parent=self)

    def child(self) -> "OperationContext":
        """Create a child context that can be cancelled independently."""
        return OperationContext(parent=self)

    def cancel(self) -> None:
        """Cancel this context and all of its children."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        """Whether this context or one of its ancestors was cancelled."""
        if self._cancelled.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or None without deadline."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def check(self) -> None:
        """Raise if the context can no longer be used.

        Raises:
            OperationCancelled: If the context was cancelled or its deadline passed.
        """
        if self.cancelled:
            raise OperationCancelled("operation cancelled")
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise OperationCancelled("deadline exceeded")

    def request_timeout(self) -> float | None:
        """Check the context and get the timeout for the next API request."""
        self.check()
        return self.remaining()


Task = Callable[[OperationContext], None]


def run_concurrently(ctx: OperationContext, tasks: Mapping[str, Task], cancel_on_error: bool = True) -> None:
    """Run tasks in parallel and wait for all of them.

    By default the first failure cancels the context given to the remaining
    tasks, which then stop at their next API call. The first error is raised
    once every task has returned.

    Args:
        ctx: Parent context.
        tasks: Callables keyed by a name used in logs.
        cancel_on_error: Whether the first failure cancels the other tasks.

    Raises:
        Exception: The first error raised by a task.
    """
    if not tasks:
        return

    group_ctx = ctx.child()
    first_error: Exception | None = None

    with ThreadPoolExecutor(max_workers=len(tasks), thread_name_prefix="arrears-task") as executor:
        futures = {executor.submit(task, group_ctx): name for name, task in tasks.items()}
        for future in as_completed(futures):
            name = futures[future]
            try:
                future.result()
            except Exception as e:
                if first_error is None:
                    first_error = e
                    if cancel_on_error:
                        group_ctx.cancel()
                    logger.error(f"Task {name} failed: {e}")
                elif isinstance(e, OperationCancelled):
                    logger.debug(f"Task {name} stopped after cancellation: {e}")
                else:
                    logger.error(f"Task {name} failed: {e}")

    if first_error is not None:
        raise first_error
