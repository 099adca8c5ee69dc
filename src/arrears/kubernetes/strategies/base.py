"""Base class for suspension strategies.

A strategy owns the reversible suspension of one class of resource kinds. The
base class handles the idempotency cache and metrics; subclasses implement the
resource specific mutations.
"""

import abc
import logging
import time
from functools import partial
from typing import ClassVar

from kubernetes.client.exceptions import ApiException

from arrears.cache import ResourceCache
from arrears.concurrency import OperationContext, run_concurrently
from arrears.config import ResourceConfig, SuspensionConfig, SuspensionMode
from arrears.kubernetes import SUSPENDED_ANNOTATION, SUSPENDED_TIME_ANNOTATION
from arrears.kubernetes.base import get_annotations, get_name, is_not_found, now_rfc3339
from arrears.kubernetes.connection import KubernetesConnection
from arrears.kubernetes.kinds import GroupVersionResource
from arrears.metrics import RESULT_FAILURE, RESULT_SKIPPED, RESULT_SUCCESS, MetricsRecorder, NoopMetrics

logger = logging.getLogger(__name__)


class SuspensionStrategy(abc.ABC):
    """Base class for all suspension strategies."""

    NAME: ClassVar[str]
    SUPPORTED_KINDS: ClassVar[frozenset[str]]

    def __init__(
        self,
        connection: KubernetesConnection,
        cache: ResourceCache,
        suspension_config: SuspensionConfig | None = None,
        metrics: MetricsRecorder | None = None,
    ):
        """Initialize the strategy.

        Args:
            connection: The Kubernetes connection to use
            cache: The idempotency cache shared by all strategies
            suspension_config: The suspension table, defaults to the built-in one
            metrics: Metrics recorder
        """
        self.connection = connection
        self.cache = cache
        self.suspension_config = suspension_config or SuspensionConfig.default()
        self.metrics = metrics or NoopMetrics()

    def get_name(self) -> str:
        return self.NAME

    def is_supported(self, kind: str) -> bool:
        """Check whether this strategy handles a resource Kind.

        Args:
            kind: The resource Kind.

        Returns:
            True if the Kind is handled by this strategy.
        """
        return kind in self.SUPPORTED_KINDS

    def suspend(self, ctx: OperationContext, namespace: str) -> None:
        """Suspend the resources of a namespace handled by this strategy.

        Returns immediately when the cache already records the strategy as
        suspended for the namespace.

        Args:
            ctx: Context bounding the API calls.
            namespace: The tenant namespace.
        """
        suspended, found = self.cache.is_suspended(namespace, self.NAME)
        if found and suspended:
            logger.debug(f"Strategy {self.NAME} already suspended namespace {namespace}, skipping")
            self.metrics.record_operation(namespace, "suspend", RESULT_SKIPPED, self.NAME, 0.0)
            return

        started = time.monotonic()
        try:
            self.suspend_resources(ctx, namespace)
        except Exception:
            self.metrics.record_operation(
                namespace, "suspend", RESULT_FAILURE, self.NAME, time.monotonic() - started
            )
            raise

        self.cache.set_suspended(namespace, self.NAME, True)
        self.metrics.record_operation(namespace, "suspend", RESULT_SUCCESS, self.NAME, time.monotonic() - started)
        logger.info(f"Strategy {self.NAME} suspended namespace {namespace}")

    def resume(self, ctx: OperationContext, namespace: str) -> None:
        """Restore the resources of a namespace handled by this strategy.

        The cache is not consulted: the annotations on the resources decide
        what needs restoring.

        Args:
            ctx: Context bounding the API calls.
            namespace: The tenant namespace.
        """
        started = time.monotonic()
        try:
            self.resume_resources(ctx, namespace)
        except Exception:
            self.metrics.record_operation(
                namespace, "resume", RESULT_FAILURE, self.NAME, time.monotonic() - started
            )
            raise

        self.cache.set_suspended(namespace, self.NAME, False)
        self.metrics.record_operation(namespace, "resume", RESULT_SUCCESS, self.NAME, time.monotonic() - started)
        logger.info(f"Strategy {self.NAME} resumed namespace {namespace}")

    @abc.abstractmethod
    def suspend_resources(self, ctx: OperationContext, namespace: str) -> None:
        """Apply the strategy's suspension to a namespace."""
        pass

    @abc.abstractmethod
    def resume_resources(self, ctx: OperationContext, namespace: str) -> None:
        """Undo the strategy's suspension in a namespace."""
        pass


def is_marked(obj: dict) -> bool:
    """Whether a resource carries the suspension annotation."""
    annotations = obj.get("metadata", {}).get("annotations") or {}
    return annotations.get(SUSPENDED_ANNOTATION) == "true"


def mark(obj: dict) -> None:
    annotations = get_annotations(obj)
    annotations[SUSPENDED_ANNOTATION] = "true"
    annotations[SUSPENDED_TIME_ANNOTATION] = now_rfc3339()


def unmark(obj: dict) -> None:
    annotations = get_annotations(obj)
    annotations.pop(SUSPENDED_ANNOTATION, None)
    annotations.pop(SUSPENDED_TIME_ANNOTATION, None)


class TableDrivenStrategy(SuspensionStrategy):
    """Strategy acting on the suspension table entries of its supported kinds.

    Each configured kind is processed in parallel according to its mode:
    mark_suspended annotates every object, delete removes the whole collection
    and backup_and_clear is left to subclasses through the prepare hooks.
    """

    def suspend_resources(self, ctx: OperationContext, namespace: str) -> None:
        run_concurrently(ctx, self._kind_tasks(namespace, self.suspend_kind))

    def resume_resources(self, ctx: OperationContext, namespace: str) -> None:
        run_concurrently(ctx, self._kind_tasks(namespace, self.resume_kind))

    def _kind_tasks(self, namespace: str, handler) -> dict:
        tasks = {}
        for plural, settings in self.suspension_config.for_kinds(self.is_supported):
            gvr = GroupVersionResource.parse(settings.gvr, plural)
            tasks[f"{self.NAME}/{plural}"] = partial(handler, namespace=namespace, gvr=gvr, settings=settings)
        return tasks

    def list_objects(self, ctx: OperationContext, namespace: str, gvr: GroupVersionResource) -> list[dict]:
        """List the objects of a kind, or nothing when the kind is not installed."""
        try:
            return self.connection.resource(gvr).list(namespace, ctx=ctx)
        except ApiException as e:
            if is_not_found(e):
                logger.debug(f"Resource type {gvr} is not served by the cluster, skipping")
                return []
            raise

    def suspend_kind(
        self, ctx: OperationContext, namespace: str, gvr: GroupVersionResource, settings: ResourceConfig
    ) -> None:
        """Suspend every object of one kind in a namespace."""
        if settings.strategy == SuspensionMode.DELETE:
            try:
                self.connection.resource(gvr).delete_collection(namespace, ctx=ctx)
            except ApiException as e:
                if not is_not_found(e):
                    raise
            logger.info(f"Deleted all {gvr.kind} objects in namespace {namespace}")
            return

        objects = self.list_objects(ctx, namespace, gvr)
        pending = [obj for obj in objects if not is_marked(obj) and not self.should_skip(obj)]
        for obj in objects:
            if is_marked(obj):
                logger.debug(f"Skipping {gvr.kind} {namespace}/{get_name(obj)} as it is already suspended")

        suspended = self.apply_each(
            ctx, gvr, pending, lambda obj: self.suspend_object(ctx, gvr, settings, obj)
        )
        already = len(objects) - len(pending)
        self.metrics.record_suspended(namespace, gvr.kind, self.NAME, suspended + already)
        logger.info(f"Suspended {suspended} of {len(pending)} {gvr.kind} objects in namespace {namespace}")

    def resume_kind(
        self, ctx: OperationContext, namespace: str, gvr: GroupVersionResource, settings: ResourceConfig
    ) -> None:
        """Restore every suspended object of one kind in a namespace."""
        if settings.strategy == SuspensionMode.DELETE:
            return

        pending = [obj for obj in self.list_objects(ctx, namespace, gvr) if is_marked(obj)]
        resumed = self.apply_each(
            ctx, gvr, pending, lambda obj: self.resume_object(ctx, gvr, settings, obj)
        )
        self.metrics.record_suspended(namespace, gvr.kind, self.NAME, len(pending) - resumed)
        logger.info(f"Resumed {resumed} of {len(pending)} {gvr.kind} objects in namespace {namespace}")

    def apply_each(self, ctx: OperationContext, gvr: GroupVersionResource, objects: list[dict], action) -> int:
        """Apply an action to each object, stopping at the first failure.

        Returns:
            The number of objects processed.
        """
        for obj in objects:
            action(obj)
        return len(objects)

    def suspend_object(
        self, ctx: OperationContext, gvr: GroupVersionResource, settings: ResourceConfig, obj: dict
    ) -> None:
        written: list[str] = []

        def mutate(current: dict) -> bool:
            if is_marked(current):
                return False
            written[:] = self.prepare_suspend(ctx, gvr, settings, current)
            mark(current)
            return True

        namespace = obj["metadata"]["namespace"]
        try:
            self.connection.resource(gvr).update_with_retry(get_name(obj), namespace, mutate, ctx=ctx, current=obj)
        except Exception:
            if written:
                self._discard_backups(ctx, gvr, obj, written)
            raise

    def _discard_backups(
        self, ctx: OperationContext, gvr: GroupVersionResource, obj: dict, configmaps: list[str]
    ) -> None:
        """Delete the backup ConfigMaps of an object that could not be written as suspended."""
        namespace = obj["metadata"]["namespace"]
        logger.warning(f"Suspending {gvr.kind} {namespace}/{get_name(obj)} failed, deleting its backup ConfigMaps")
        try:
            self.release_backups(ctx, namespace, configmaps)
        except Exception as e:
            logger.error(f"Failed to delete backup ConfigMaps {configmaps} in namespace {namespace}: {e}")

    def resume_object(
        self, ctx: OperationContext, gvr: GroupVersionResource, settings: ResourceConfig, obj: dict
    ) -> None:
        leftovers: list[str] = []

        def mutate(current: dict) -> bool:
            if not is_marked(current):
                return False
            leftovers[:] = self.prepare_resume(ctx, gvr, settings, current)
            unmark(current)
            return True

        namespace = obj["metadata"]["namespace"]
        if self.connection.resource(gvr).update_with_retry(
            get_name(obj), namespace, mutate, ctx=ctx, current=obj
        ) is None:
            return
        self.release_backups(ctx, namespace, leftovers)

    def should_skip(self, obj: dict) -> bool:
        """Whether an object must never be suspended."""
        return False

    def prepare_suspend(
        self, ctx: OperationContext, gvr: GroupVersionResource, settings: ResourceConfig, obj: dict
    ) -> list[str]:
        """Modify an object before it is written back as suspended.

        Returns:
            Names of the backup ConfigMaps written for the object.
        """
        return []

    def prepare_resume(
        self, ctx: OperationContext, gvr: GroupVersionResource, settings: ResourceConfig, obj: dict
    ) -> list[str]:
        """Modify an object before it is written back as resumed.

        Returns:
            Names of backup ConfigMaps to delete once the object is written.
        """
        return []

    def release_backups(self, ctx: OperationContext, namespace: str, configmaps: list[str]) -> None:
        """Delete backup ConfigMaps that are no longer referenced."""
        pass
