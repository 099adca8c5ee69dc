"""Suspension transactions.

A transaction records the strategy steps completed during one suspend or
resume run. When the run fails, the completed steps are compensated in reverse
order on a best effort basis.
"""

import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from arrears.cache import ResourceCache
from arrears.concurrency import OperationContext
from arrears.errors import OperationCancelled, StrategyError
from arrears.kubernetes.strategies.base import SuspensionStrategy
from arrears.metrics import ERROR_STEP_FAILURE, MetricsRecorder, NoopMetrics

logger = logging.getLogger(__name__)

SUSPENDED_SUFFIX = "_suspended"
RESUMED_SUFFIX = "_resumed"


class TransactionStatus(str, Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass
class SuspensionTransaction:
    """In-memory record of one suspend or resume run.

    Attributes:
        namespace: The tenant namespace.
        status: Current status of the run.
        steps: Completed steps, "<strategy>_suspended" or "<strategy>_resumed".
        error: Message of the error that failed the run.
        created_at: Start of the run.
        updated_at: Last change.
    """
    namespace: str
    status: TransactionStatus = TransactionStatus.IN_PROGRESS
    steps: list[str] = field(default_factory=list)
    error: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def add_step(self, step: str) -> None:
        """Record a completed step. Safe to call from parallel tasks."""
        with self._lock:
            self.steps.append(step)
            self.updated_at = datetime.now(UTC)

    def complete(self) -> None:
        with self._lock:
            self.status = TransactionStatus.COMPLETED
            self.updated_at = datetime.now(UTC)

    def fail(self, error: Exception) -> None:
        with self._lock:
            self.status = TransactionStatus.FAILED
            self.error = str(error)
            self.updated_at = datetime.now(UTC)


class TransactionManager:
    """Creates transactions and compensates failed ones."""

    def __init__(
        self,
        strategies: Mapping[str, SuspensionStrategy],
        cache: ResourceCache,
        metrics: MetricsRecorder | None = None,
    ):
        """Initialize the manager.

        Args:
            strategies: Strategies keyed by name, used to find the compensating operation.
            cache: The idempotency cache, cleared for a namespace after rollback.
            metrics: Metrics recorder counting failed compensations.
        """
        self.strategies = strategies
        self.cache = cache
        self.metrics = metrics or NoopMetrics()

    def begin(self, namespace: str) -> SuspensionTransaction:
        return SuspensionTransaction(namespace=namespace)

    def run_step(
        self,
        tx: SuspensionTransaction,
        strategy: SuspensionStrategy,
        suspend: bool,
    ) -> Callable[[OperationContext], None]:
        """Wrap a strategy call so that its success is recorded in the transaction.

        Args:
            tx: The running transaction.
            strategy: The strategy to run.
            suspend: True to suspend, False to resume.

        Returns:
            A task suitable for run_concurrently.

        Raises:
            StrategyError: From the task, wrapping the strategy failure. Cancellations
                are raised unchanged.
        """
        def step(ctx: OperationContext) -> None:
            name = strategy.get_name()
            try:
                if suspend:
                    strategy.suspend(ctx, tx.namespace)
                else:
                    strategy.resume(ctx, tx.namespace)
            except (StrategyError, OperationCancelled):
                raise
            except Exception as e:
                raise StrategyError(name, str(e)) from e
            tx.add_step(f"{name}{SUSPENDED_SUFFIX if suspend else RESUMED_SUFFIX}")

        return step

    def rollback(self, tx: SuspensionTransaction, ctx: OperationContext) -> None:
        """Compensate the completed steps of a failed transaction in reverse order.

        Failures are logged and do not stop the remaining compensations.

        Args:
            tx: The failed transaction.
            ctx: Context bounding the compensating calls.
        """
        logger.warning(f"Rolling back {len(tx.steps)} steps in namespace {tx.namespace}")
        for step in reversed(list(tx.steps)):
            try:
                self._rollback_step(tx.namespace, step, ctx)
            except Exception as e:
                logger.error(f"Failed to roll back step {step} in namespace {tx.namespace}: {e}")
                self.metrics.record_error("rollback", ERROR_STEP_FAILURE, "")

        self.cache.clear_namespace(tx.namespace)

    def _rollback_step(self, namespace: str, step: str, ctx: OperationContext) -> None:
        if step.endswith(SUSPENDED_SUFFIX):
            name, compensate_with_resume = step[: -len(SUSPENDED_SUFFIX)], True
        elif step.endswith(RESUMED_SUFFIX):
            name, compensate_with_resume = step[: -len(RESUMED_SUFFIX)], False
        else:
            logger.warning(f"Unknown transaction step {step}, skipping")
            return

        strategy = self.strategies.get(name)
        if strategy is None:
            logger.warning(f"No strategy named {name} to roll back step {step}")
            return

        if compensate_with_resume:
            logger.info(f"Rolling back {step} in namespace {namespace} by resuming")
            strategy.resume(ctx, namespace)
        else:
            logger.info(f"Rolling back {step} in namespace {namespace} by suspending")
            strategy.suspend(ctx, namespace)
