"""ConfigMap based lock.

A lock is a ConfigMap named debt-<operation>-<namespace> in the system
namespace. Creating it acquires the lock, deleting it releases it. A failed
create means another replica is working on the same namespace.
"""

import logging
from collections.abc import Callable
from typing import TypeVar

from kubernetes.client.exceptions import ApiException

from arrears.concurrency import OperationContext
from arrears.errors import LockBusyError
from arrears.kubernetes.base import is_conflict, is_not_found, now_rfc3339
from arrears.kubernetes.connection import KubernetesConnection
from arrears.kubernetes.kinds import CONFIGMAPS

logger = logging.getLogger(__name__)

LOCK_LABEL = "debt.sealos.io/lock"
LOCK_OPERATION_LABEL = "debt.sealos.io/operation"

T = TypeVar("T")


class DistributedLock:
    """Mutual exclusion of suspend and resume runs across controller replicas."""

    def __init__(
        self, connection: KubernetesConnection, system_namespace: str, holder: str, timeout: float = 30
    ):
        """Initialize the lock.

        Args:
            connection: The Kubernetes connection to use
            system_namespace: Namespace holding the lock ConfigMaps
            holder: Identity written into the lock record
            timeout: Deadline in seconds for the protected operation
        """
        self.configmaps = connection.resource(CONFIGMAPS)
        self.system_namespace = system_namespace
        self.holder = holder
        self.timeout = timeout

    @staticmethod
    def lock_name(namespace: str, operation: str) -> str:
        return f"debt-{operation}-{namespace}"

    def with_lock(
        self,
        namespace: str,
        operation: str,
        fn: Callable[[OperationContext], T],
        ctx: OperationContext | None = None,
    ) -> T:
        """Run a function while holding the lock for a namespace and operation.

        The function receives a context expiring after the lock timeout. The lock
        is released on every exit path.

        Args:
            namespace: The tenant namespace.
            operation: "suspend" or "resume".
            fn: The protected operation.
            ctx: Parent context.

        Returns:
            The function's result.

        Raises:
            LockBusyError: If another holder owns the lock.
        """
        parent = ctx or OperationContext.background()
        name = self.lock_name(namespace, operation)
        body = {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {
                "name": name,
                "namespace": self.system_namespace,
                "labels": {
                    LOCK_LABEL: "true",
                    LOCK_OPERATION_LABEL: operation,
                },
            },
            "data": {
                "holder": self.holder,
                "timestamp": now_rfc3339(),
            },
        }

        try:
            self.configmaps.create(self.system_namespace, body, ctx=parent)
        except ApiException as e:
            if is_conflict(e):
                raise LockBusyError(namespace, operation, name) from e
            raise
        logger.debug(f"Acquired lock {name} as {self.holder}")

        try:
            return fn(parent.with_timeout(self.timeout))
        finally:
            self._release(name)

    def _release(self, name: str) -> None:
        """Delete the lock ConfigMap, independently of any cancelled context."""
        try:
            self.configmaps.delete(name, self.system_namespace)
            logger.debug(f"Released lock {name}")
        except Exception as e:
            if is_not_found(e):
                logger.warning(f"Lock {name} was already gone on release")
            else:
                logger.error(f"Failed to release lock {name}: {e}")
