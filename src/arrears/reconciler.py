"""Reconciler module for Arrears.

This module turns changes of the debt status annotation of namespaces into
suspend, resume and delete runs, and writes back the completed status.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from kubernetes import client, watch
from kubernetes.client.exceptions import ApiException

from arrears.config import ArrearsConfig
from arrears.debt import DebtStatus
from arrears.errors import LockBusyError
from arrears.kubernetes.base import is_conflict, is_not_found
from arrears.kubernetes.controller import KubernetesController
from arrears.kubernetes.resources.events import (
    EVENT_ACTION_DELETION,
    EVENT_ACTION_RESUMPTION,
    EVENT_ACTION_SUSPENSION,
    create_transition_event,
)

logger = logging.getLogger(__name__)

NAMESPACE_TERMINATING = "Terminating"

# Pause between two attempts at writing the status after a conflict
STATUS_RETRY_INTERVAL = 0.2

# Requeue delays after failed reconciliations
BACKOFF_BASE = 5.0
BACKOFF_MAX = 1000.0

# Server side timeout of one namespace watch
WATCH_TIMEOUT = 300


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation.

    Attributes:
        requeue_after: Seconds after which the namespace must be reconciled again, if any.
    """
    requeue_after: float | None = None


def _is_completed(value: str | None) -> bool:
    status = DebtStatus.parse(value)
    return status is not None and status.is_completed


def accepts_create(annotations: dict[str, str] | None, key: str) -> bool:
    """Whether a newly seen namespace needs reconciling.

    Args:
        annotations: The namespace annotations.
        key: The debt status annotation key.

    Returns:
        True if the status is present, not Normal and not completed.
    """
    if not annotations or key not in annotations:
        return False
    value = annotations[key]
    return value != DebtStatus.NORMAL.value and not _is_completed(value)


def accepts_update(old: dict[str, str] | None, new: dict[str, str] | None, key: str) -> bool:
    """Whether a namespace update needs reconciling.

    Args:
        old: Annotations before the update.
        new: Annotations after the update.
        key: The debt status annotation key.

    Returns:
        True if the status changed to a value that is not completed.
    """
    if new is None:
        return False
    new_value = new.get(key)
    return (old or {}).get(key) != new_value and not _is_completed(new_value)


class Reconciler:
    """Reconciler driving namespaces through their debt status.

    Only the status annotation is interpreted here; the actual work is done
    by the controller.
    """

    def __init__(self, config: ArrearsConfig, controller: KubernetesController):
        """Initialize the reconciler.

        Args:
            config: Controller settings.
            controller: The controller doing the suspend, resume and delete runs.
        """
        self.config = config
        self.controller = controller
        self.connection = controller.connection
        self.api = controller.connection.core_v1_api

        self._lock = threading.Lock()
        self._in_flight: set[str] = set()
        self._dirty: set[str] = set()
        self._failures: dict[str, int] = {}
        self._stopped = threading.Event()
        self._executor: ThreadPoolExecutor | None = None

    def reconcile(self, name: str) -> ReconcileResult:
        """Reconcile one namespace.

        Args:
            name: The namespace name.

        Returns:
            When to reconcile the namespace again.

        Raises:
            Exception: If a suspend or resume run or a status write failed.
        """
        try:
            namespace = self.api.read_namespace(name)
        except ApiException as e:
            if is_not_found(e):
                logger.debug(f"Namespace {name} no longer exists")
                return ReconcileResult()
            raise

        if namespace.status is not None and namespace.status.phase == NAMESPACE_TERMINATING:
            logger.debug(f"Namespace {name} is terminating")
            return ReconcileResult()

        annotations = namespace.metadata.annotations or {}
        raw_status = annotations.get(self.config.status_annotation)
        if raw_status is None:
            logger.error(f"Namespace {name} has no debt status")
            return ReconcileResult()

        status = DebtStatus.parse(raw_status)
        if status is None:
            logger.error(f"Unknown debt status {raw_status!r} on namespace {name}, resetting it to Normal")
            self.update_status(name, DebtStatus.NORMAL)
            return ReconcileResult()

        if status.is_completed:
            logger.debug(f"Namespace {name} is {status.value}, nothing to do")
            return ReconcileResult()

        logger.info(f"Reconciling namespace {name} with debt status {status.value}")
        if status in (DebtStatus.SUSPEND, DebtStatus.TERMINATE_SUSPEND):
            self._transition(namespace, EVENT_ACTION_SUSPENSION, self.controller.suspend_user_resources)
            self.update_status(name, status.completed())
            create_transition_event(
                self.connection, namespace, EVENT_ACTION_SUSPENSION, f"Resources suspended ({status.value})"
            )
        elif status == DebtStatus.RESUME:
            self._transition(namespace, EVENT_ACTION_RESUMPTION, self.controller.resume_user_resources)
            self.update_status(name, status.completed())
            create_transition_event(self.connection, namespace, EVENT_ACTION_RESUMPTION, "Resources resumed")
        elif status == DebtStatus.FINAL_DELETION:
            try:
                self.controller.delete_user_resources(name)
            except Exception as e:
                logger.error(f"Failed to delete resources of namespace {name}: {e}")
                create_transition_event(
                    self.connection, namespace, EVENT_ACTION_DELETION, f"Resource deletion failed: {e}", failed=True
                )
                return ReconcileResult(requeue_after=self.config.deletion_requeue_after)
            self.update_status(name, status.completed())
            create_transition_event(self.connection, namespace, EVENT_ACTION_DELETION, "Resources deleted")

        return ReconcileResult()

    def _transition(self, namespace: client.V1Namespace, action: str, run) -> None:
        name = namespace.metadata.name
        try:
            run(name)
        except LockBusyError:
            raise
        except Exception as e:
            logger.error(f"{action} of namespace {name} failed: {e}")
            create_transition_event(self.connection, namespace, action, f"{action} failed: {e}", failed=True)
            raise

    def update_status(self, name: str, status: DebtStatus) -> None:
        """Write the debt status of a namespace.

        Conflicting writes are retried on a fresh copy until the status update
        timeout elapses.

        Args:
            name: The namespace name.
            status: The status to write.
        """
        deadline = time.monotonic() + self.config.status_update_timeout
        while True:
            namespace = self.api.read_namespace(name)
            if namespace.metadata.annotations is None:
                namespace.metadata.annotations = {}
            namespace.metadata.annotations[self.config.status_annotation] = status.value
            try:
                self.api.replace_namespace(name, namespace)
                logger.info(f"Set debt status of namespace {name} to {status.value}")
                return
            except ApiException as e:
                if not is_conflict(e) or time.monotonic() >= deadline:
                    raise
                logger.debug(f"Conflict writing the debt status of namespace {name}, retrying")
            time.sleep(STATUS_RETRY_INTERVAL)

    def backoff(self, name: str) -> float:
        """Record a failure and get the delay before the next attempt."""
        with self._lock:
            failures = self._failures.get(name, 0) + 1
            self._failures[name] = failures
        return min(BACKOFF_BASE * 2 ** (failures - 1), BACKOFF_MAX)

    def enqueue(self, name: str) -> None:
        """Schedule a reconciliation, at most one running per namespace.

        A namespace enqueued while it is being reconciled runs again once the
        current reconciliation returns.
        """
        if self._stopped.is_set() or self._executor is None:
            return
        with self._lock:
            if name in self._in_flight:
                self._dirty.add(name)
                return
            self._in_flight.add(name)
        self._executor.submit(self._process, name)

    def _process(self, name: str) -> None:
        delay = None
        try:
            result = self.reconcile(name)
        except LockBusyError as e:
            logger.info(f"{e}, retrying later")
            delay = self.backoff(name)
        except Exception as e:
            logger.exception(f"Error reconciling namespace {name}: {str(e)}")
            delay = self.backoff(name)
        else:
            with self._lock:
                self._failures.pop(name, None)
            delay = result.requeue_after

        with self._lock:
            self._in_flight.discard(name)
            rerun = name in self._dirty
            self._dirty.discard(name)

        if rerun:
            self.enqueue(name)
        elif delay:
            logger.debug(f"Requeueing namespace {name} in {delay:.0f}s")
            timer = threading.Timer(delay, self.enqueue, args=(name,))
            timer.daemon = True
            timer.start()

    def handle_event(self, event_type: str, namespace: client.V1Namespace, seen: dict[str, dict]) -> None:
        """Filter a namespace watch event and enqueue the namespace if needed.

        Args:
            event_type: ADDED, MODIFIED or DELETED.
            namespace: The namespace object.
            seen: Last annotations seen per namespace, updated in place.
        """
        name = namespace.metadata.name
        annotations = namespace.metadata.annotations
        key = self.config.status_annotation

        if event_type == "DELETED":
            seen.pop(name, None)
            return

        if event_type == "ADDED" or name not in seen:
            accepted = accepts_create(annotations, key)
        else:
            accepted = accepts_update(seen[name], annotations, key)
        seen[name] = dict(annotations or {})

        if accepted:
            self.enqueue(name)

    def stop(self) -> None:
        self._stopped.set()

    def run_reconciliation_loop(self) -> None:
        """Watch namespaces and reconcile them until interrupted.

        The watch is restarted when it times out, and from scratch when its
        resource version expires.
        """
        logger.info(
            f"Starting reconciliation loop with {self.config.max_concurrent_reconciles} workers, "
            f"status annotation {self.config.status_annotation}"
        )
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.max_concurrent_reconciles, thread_name_prefix="arrears-reconcile"
        )
        seen: dict[str, dict] = {}
        resource_version = None

        try:
            while not self._stopped.is_set():
                watcher = watch.Watch()
                try:
                    for event in watcher.stream(
                        self.api.list_namespace, resource_version=resource_version, timeout_seconds=WATCH_TIMEOUT
                    ):
                        if event["type"] not in ("ADDED", "MODIFIED", "DELETED"):
                            continue
                        namespace = event["object"]
                        resource_version = namespace.metadata.resource_version
                        self.handle_event(event["type"], namespace, seen)
                        if self._stopped.is_set():
                            break
                except ApiException as e:
                    if e.status != 410:
                        raise
                    logger.info("Namespace watch expired, restarting from scratch")
                    resource_version = None
                    seen.clear()
                finally:
                    watcher.stop()
        except KeyboardInterrupt:
            logger.info("Reconciliation loop interrupted, shutting down")
        except Exception as e:
            logger.exception(f"Error in reconciliation loop: {str(e)}")
            raise
        finally:
            self._stopped.set()
            self._executor.shutdown(wait=True)
