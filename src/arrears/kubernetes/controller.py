"""Kubernetes controller module.

This module provides the controller suspending, resuming and deleting the
resources of a tenant namespace. Suspension runs in three phases:

1. the certificate and network strategies, in parallel
2. the RBAC strategy, once tenants can no longer be reached
3. the resource handlers outside the strategies, in parallel

Resume runs RBAC first, then certificates and network, then the handlers.
"""

import logging
import threading
import time
from collections.abc import Callable, Mapping
from functools import partial

from kubernetes.client.exceptions import ApiException

from arrears.cache import SCOPE_ALL, ResourceCache
from arrears.concurrency import OperationContext, Task, run_concurrently
from arrears.config import ArrearsConfig, SuspensionConfig
from arrears.debt import DebtStatus
from arrears.errors import IdempotencyCheckError, OperationCancelled
from arrears.kubernetes.backup import BackupCodec
from arrears.kubernetes.base import request_options
from arrears.kubernetes.connection import KubernetesConnection
from arrears.kubernetes.kinds import CONFIGMAPS
from arrears.kubernetes.lock import DistributedLock
from arrears.kubernetes.resources import (
    CronJobResource,
    KubeBlocksClusterResource,
    ObjectStorageUsers,
    PodResource,
    QuotaResource,
    delete_user_resources,
)
from arrears.kubernetes.resources.objectstorage import AdminFactory
from arrears.kubernetes.strategies import CertificateStrategy, NetworkStrategy, RBACStrategy, SuspensionStrategy
from arrears.kubernetes.transaction import SuspensionTransaction, TransactionManager
from arrears.metrics import (
    ERROR_IDEMPOTENCY_CHECK,
    ERROR_STRATEGY_EXECUTION,
    RESULT_FAILURE,
    RESULT_SKIPPED,
    RESULT_SUCCESS,
    MetricsRecorder,
    NoopMetrics,
)

logger = logging.getLogger(__name__)

SUSPENSION_CONFIG_NAME = "suspension-config"
SUSPENSION_CONFIG_KEY = "config.yaml"

OPERATION_SUSPEND = "suspend"
OPERATION_RESUME = "resume"

PARALLEL_STRATEGIES = (CertificateStrategy.NAME, NetworkStrategy.NAME)
SERIAL_STRATEGIES = (RBACStrategy.NAME,)


class KubernetesController:
    """Controller for the debt suspension of tenant namespaces.

    Strategies are built on first use, once the suspension table has been
    read from the system namespace.
    """

    def __init__(
        self,
        config: ArrearsConfig,
        connection: KubernetesConnection | None = None,
        metrics: MetricsRecorder | None = None,
        cache: ResourceCache | None = None,
        strategies: Mapping[str, SuspensionStrategy] | None = None,
        object_storage_factory: AdminFactory | None = None,
    ):
        """Initialize the Kubernetes controller.

        Args:
            config: Controller settings.
            connection: The Kubernetes connection to use. A new one is opened if None.
            metrics: Metrics recorder.
            cache: The idempotency cache.
            strategies: Strategies keyed by name. Built from the suspension table if None.
            object_storage_factory: Builds the object storage admin client. The
                object storage step is skipped if None.
        """
        self.config = config
        self.connection = connection or KubernetesConnection()
        self.metrics = metrics or NoopMetrics()
        self.cache = cache or ResourceCache(config.cache_cleanup_interval)
        self.codec = BackupCodec(self.connection, config.backup_size_limit)
        self.lock = DistributedLock(
            self.connection, config.system_namespace, config.holder_id, timeout=config.lock_timeout
        )

        self.kubeblocks = KubeBlocksClusterResource(self.connection)
        self.pods = PodResource(self.connection)
        self.quotas = QuotaResource(self.connection)
        self.cronjobs = CronJobResource(self.connection)
        self.object_storage = ObjectStorageUsers(
            self.connection,
            endpoint=config.object_storage_endpoint,
            secret_namespace=config.object_storage_namespace,
            admin_secret=config.object_storage_admin_secret,
            admin_factory=object_storage_factory,
        )

        self._strategies = dict(strategies) if strategies is not None else None
        self._transactions: TransactionManager | None = None
        self._init_lock = threading.Lock()

    def load_suspension_config(self, ctx: OperationContext | None = None) -> SuspensionConfig:
        """Read the suspension table, falling back to the built-in one.

        Args:
            ctx: Context bounding the API call.

        Returns:
            The suspension table.
        """
        try:
            configmap = self.connection.resource(CONFIGMAPS).get(
                SUSPENSION_CONFIG_NAME, self.config.system_namespace, ctx=ctx
            )
        except ApiException as e:
            logger.warning(f"Cannot read ConfigMap {SUSPENSION_CONFIG_NAME}, using the default suspension config: {e}")
            return SuspensionConfig.default()

        data = (configmap.get("data") or {}).get(SUSPENSION_CONFIG_KEY)
        if data is None:
            logger.warning(
                f"ConfigMap {SUSPENSION_CONFIG_NAME} has no {SUSPENSION_CONFIG_KEY} key, "
                "using the default suspension config"
            )
            return SuspensionConfig.default()

        try:
            return SuspensionConfig.from_yaml(data)
        except ValueError as e:
            logger.warning(f"{e}, using the default suspension config")
            return SuspensionConfig.default()

    def get_strategies(self, ctx: OperationContext | None = None) -> dict[str, SuspensionStrategy]:
        """Get the strategies keyed by name, building them on first use."""
        with self._init_lock:
            if self._strategies is None:
                suspension_config = self.load_suspension_config(ctx)
                common = {
                    "connection": self.connection,
                    "cache": self.cache,
                    "suspension_config": suspension_config,
                    "metrics": self.metrics,
                }
                strategies = [
                    CertificateStrategy(**common),
                    NetworkStrategy(codec=self.codec, **common),
                    RBACStrategy(codec=self.codec, **common),
                ]
                self._strategies = {strategy.get_name(): strategy for strategy in strategies}
                unhandled = [
                    plural
                    for plural, settings in suspension_config.resources.items()
                    if not any(strategy.is_supported(settings.kind) for strategy in strategies)
                ]
                if unhandled:
                    logger.warning(
                        f"No strategy handles {', '.join(unhandled)} from the suspension config, ignoring them"
                    )
                logger.info(f"Loaded suspension strategies: {', '.join(self._strategies)}")
            if self._transactions is None:
                self._transactions = TransactionManager(self._strategies, self.cache, self.metrics)
            return self._strategies

    @property
    def transactions(self) -> TransactionManager:
        self.get_strategies()
        return self._transactions

    def is_suspended(self, ctx: OperationContext, namespace: str) -> bool:
        """Check whether a namespace is known to be suspended.

        The cache answers when it has an entry; otherwise the namespace's debt
        status decides, and only a positive answer is cached.

        Raises:
            IdempotencyCheckError: If the namespace cannot be read.
        """
        suspended, found = self.cache.is_suspended(namespace, SCOPE_ALL)
        if found:
            return suspended

        try:
            ns = self.connection.core_v1_api.read_namespace(namespace, **request_options(ctx))
        except Exception as e:
            raise IdempotencyCheckError(f"cannot read namespace {namespace}: {e}") from e

        annotations = (ns.metadata.annotations if ns.metadata else None) or {}
        status = DebtStatus.parse(annotations.get(self.config.status_annotation))
        suspended = status is not None and status.is_suspended
        if suspended:
            self.cache.set_suspended(namespace, SCOPE_ALL, True)
        return suspended

    def suspend_user_resources(self, namespace: str, ctx: OperationContext | None = None) -> bool:
        """Suspend the resources of a namespace.

        Args:
            namespace: The tenant namespace.
            ctx: Parent context.

        Returns:
            False if the namespace was already suspended and nothing was done.

        Raises:
            LockBusyError: If another replica is working on the namespace.
            IdempotencyCheckError: If the current state cannot be determined.
        """
        ctx = ctx or OperationContext.background()
        logger.info(f"Suspending resources of namespace {namespace}")

        try:
            already_suspended = self.is_suspended(ctx, namespace)
        except IdempotencyCheckError:
            self.metrics.record_error(OPERATION_SUSPEND, ERROR_IDEMPOTENCY_CHECK, "")
            raise
        if already_suspended:
            logger.info(f"Namespace {namespace} is already suspended, skipping")
            self.metrics.record_operation(namespace, OPERATION_SUSPEND, RESULT_SKIPPED, SCOPE_ALL, 0.0)
            return False

        self._timed(namespace, OPERATION_SUSPEND, lambda: self.lock.with_lock(
            namespace, OPERATION_SUSPEND, partial(self._suspend_with_transaction, namespace=namespace), ctx=ctx
        ))
        return True

    def resume_user_resources(self, namespace: str, ctx: OperationContext | None = None) -> bool:
        """Restore the resources of a namespace.

        The run is skipped only when the cache positively records the
        namespace as not suspended.

        Args:
            namespace: The tenant namespace.
            ctx: Parent context.

        Returns:
            False if the namespace was known not to be suspended and nothing was done.

        Raises:
            LockBusyError: If another replica is working on the namespace.
        """
        ctx = ctx or OperationContext.background()
        logger.info(f"Resuming resources of namespace {namespace}")

        suspended, found = self.cache.is_suspended(namespace, SCOPE_ALL)
        if found and not suspended:
            logger.info(f"Namespace {namespace} is not suspended, skipping")
            self.metrics.record_operation(namespace, OPERATION_RESUME, RESULT_SKIPPED, SCOPE_ALL, 0.0)
            return False

        self._timed(namespace, OPERATION_RESUME, lambda: self.lock.with_lock(
            namespace, OPERATION_RESUME, partial(self._resume_with_transaction, namespace=namespace), ctx=ctx
        ))
        return True

    def delete_user_resources(self, namespace: str, ctx: OperationContext | None = None) -> None:
        """Delete the tenant resources of a namespace.

        Args:
            namespace: The tenant namespace.
            ctx: Parent context.
        """
        ctx = ctx or OperationContext.background()
        logger.info(f"Deleting resources of namespace {namespace}")
        delete_user_resources(self.connection, ctx, namespace)
        self.cache.clear_namespace(namespace)

        try:
            removed = self.codec.cleanup_orphaned_backups(namespace, ctx=ctx)
            if removed:
                logger.info(f"Removed {removed} orphaned backups in namespace {namespace}")
        except Exception as e:
            logger.warning(f"Failed to clean up backups in namespace {namespace}: {e}")

    def _timed(self, namespace: str, operation: str, fn: Callable[[], None]) -> None:
        started = time.monotonic()
        try:
            fn()
        except Exception:
            self.metrics.record_operation(
                namespace, operation, RESULT_FAILURE, SCOPE_ALL, time.monotonic() - started
            )
            raise
        duration = time.monotonic() - started
        self.metrics.record_operation(namespace, operation, RESULT_SUCCESS, SCOPE_ALL, duration)
        logger.info(f"Finished {operation} of namespace {namespace} in {duration:.2f}s")

    def _suspend_with_transaction(self, ctx: OperationContext, namespace: str) -> None:
        strategies = self.get_strategies(ctx)
        tx = self.transactions.begin(namespace)
        try:
            run_concurrently(ctx, self._strategy_tasks(tx, strategies, PARALLEL_STRATEGIES, suspend=True))
            for task in self._strategy_tasks(tx, strategies, SERIAL_STRATEGIES, suspend=True).values():
                task(ctx)
            run_concurrently(ctx, self.legacy_suspend_tasks(namespace))
        except Exception as e:
            self._fail(tx, e)
            raise
        tx.complete()
        self.cache.set_suspended(namespace, SCOPE_ALL, True)

    def _resume_with_transaction(self, ctx: OperationContext, namespace: str) -> None:
        strategies = self.get_strategies(ctx)
        tx = self.transactions.begin(namespace)
        try:
            for task in self._strategy_tasks(tx, strategies, SERIAL_STRATEGIES, suspend=False).values():
                task(ctx)
            run_concurrently(ctx, self._strategy_tasks(tx, strategies, PARALLEL_STRATEGIES, suspend=False))
            run_concurrently(ctx, self.legacy_resume_tasks(namespace))
        except Exception as e:
            self._fail(tx, e)
            raise
        tx.complete()
        self.cache.set_suspended(namespace, SCOPE_ALL, False)

    def _strategy_tasks(
        self,
        tx: SuspensionTransaction,
        strategies: Mapping[str, SuspensionStrategy],
        names: tuple[str, ...],
        suspend: bool,
    ) -> dict[str, Task]:
        tasks = {}
        for name in names:
            strategy = strategies.get(name)
            if strategy is None:
                logger.warning(f"Strategy {name} is not registered, skipping")
                continue
            tasks[name] = self._counted(self.transactions.run_step(tx, strategy, suspend), name, suspend)
        return tasks

    def _counted(self, step: Task, strategy_name: str, suspend: bool) -> Task:
        """Count the failures of a strategy step, except cancellations caused by a sibling."""
        operation = OPERATION_SUSPEND if suspend else OPERATION_RESUME

        def task(ctx: OperationContext) -> None:
            try:
                step(ctx)
            except OperationCancelled:
                raise
            except Exception:
                self.metrics.record_error(operation, ERROR_STRATEGY_EXECUTION, strategy_name)
                raise

        return task

    def legacy_suspend_tasks(self, namespace: str) -> dict[str, Task]:
        """Suspension steps of the resources handled outside the strategies."""
        return {
            "kubeblocks": partial(self.kubeblocks.suspend, namespace=namespace),
            "orphan-pods": partial(self.pods.suspend_orphans, namespace=namespace),
            "quota": partial(self.quotas.suspend, namespace=namespace),
            "controlled-pods": partial(self.pods.delete_controlled, namespace=namespace),
            "cronjobs": partial(self.cronjobs.suspend, namespace=namespace),
            "object-storage": partial(self.object_storage.suspend, namespace=namespace),
        }

    def legacy_resume_tasks(self, namespace: str) -> dict[str, Task]:
        """Resume steps of the resources handled outside the strategies."""
        return {
            "quota": partial(self.quotas.resume, namespace=namespace),
            "pods": partial(self.pods.resume, namespace=namespace),
            "cronjobs": partial(self.cronjobs.resume, namespace=namespace),
            "object-storage": partial(self.object_storage.resume, namespace=namespace),
        }

    def _fail(self, tx: SuspensionTransaction, error: Exception) -> None:
        """Mark a transaction failed and compensate its completed steps.

        Compensation runs under a fresh deadline since the failure may come
        from the expiry of the original one. A cancelled run is not
        compensated.
        """
        tx.fail(error)
        logger.error(f"Transaction in namespace {tx.namespace} failed after steps {tx.steps}: {error}")
        if isinstance(error, OperationCancelled):
            logger.warning(f"Operation in namespace {tx.namespace} was cancelled, not rolling back")
            self.cache.clear_namespace(tx.namespace)
            return
        rollback_ctx = OperationContext.background().with_timeout(self.config.lock_timeout)
        self.transactions.rollback(tx, rollback_ctx)
