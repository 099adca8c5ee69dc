"""Metrics for suspension operations.

Components receive a MetricsRecorder through their constructor. The Prometheus
implementation is used by the CLI and NoopMetrics everywhere else.
"""

import abc

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

# Values of the result label
RESULT_SUCCESS = "success"
RESULT_FAILURE = "failure"
RESULT_SKIPPED = "skipped"

# Values of the error_type label
ERROR_IDEMPOTENCY_CHECK = "idempotency_check"
ERROR_STRATEGY_EXECUTION = "strategy_execution"
ERROR_STEP_FAILURE = "step_failure"


class MetricsRecorder(abc.ABC):
    """Sink for suspension metrics."""

    @abc.abstractmethod
    def record_operation(
        self, namespace: str, operation: str, result: str, strategy: str, duration: float
    ) -> None:
        """Record the outcome and duration of an operation.

        Args:
            namespace: The tenant namespace.
            operation: "suspend" or "resume".
            result: One of the RESULT_* values.
            strategy: Strategy name, or "all" for the whole namespace.
            duration: Duration in seconds.
        """

    @abc.abstractmethod
    def record_error(self, operation: str, error_type: str, strategy: str) -> None:
        """Count an error of the given type."""

    @abc.abstractmethod
    def record_suspended(self, namespace: str, resource_type: str, strategy: str, count: int) -> None:
        """Set the number of suspended resources of a type in a namespace."""


class NoopMetrics(MetricsRecorder):
    """Recorder that drops everything."""

    def record_operation(self, namespace, operation, result, strategy, duration):
        pass

    def record_error(self, operation, error_type, strategy):
        pass

    def record_suspended(self, namespace, resource_type, strategy, count):
        pass


class PrometheusMetrics(MetricsRecorder):
    """Recorder exporting Prometheus series."""

    def __init__(self, registry: CollectorRegistry = REGISTRY):
        """Register the series.

        Args:
            registry: Registry to register the series in.
        """
        self.suspension_duration = Histogram(
            "debt_suspension_duration_seconds",
            "Time spent suspending or resuming a namespace",
            ["namespace", "operation", "result", "strategy"],
            registry=registry,
        )
        self.suspended_resources = Gauge(
            "debt_suspended_resources_total",
            "Number of resources currently suspended",
            ["namespace", "resource_type", "strategy"],
            registry=registry,
        )
        self.operations = Counter(
            "debt_operations_total",
            "Total suspension operations",
            ["operation", "result", "strategy"],
            registry=registry,
        )
        self.errors = Counter(
            "debt_errors_total",
            "Total suspension errors",
            ["operation", "error_type", "strategy"],
            registry=registry,
        )

    def record_operation(self, namespace, operation, result, strategy, duration):
        self.suspension_duration.labels(
            namespace=namespace, operation=operation, result=result, strategy=strategy
        ).observe(duration)
        self.operations.labels(operation=operation, result=result, strategy=strategy).inc()

    def record_error(self, operation, error_type, strategy):
        self.errors.labels(operation=operation, error_type=error_type, strategy=strategy).inc()

    def record_suspended(self, namespace, resource_type, strategy, count):
        self.suspended_resources.labels(
            namespace=namespace, resource_type=resource_type, strategy=strategy
        ).set(count)
