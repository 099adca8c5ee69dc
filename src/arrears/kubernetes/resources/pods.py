"""Pod handling module.

Pods owned by a controller are simply deleted on suspend: the zero quota keeps
their replacements from starting. Orphan pods have no controller to bring them
back, so they are recreated with a scheduler that never binds them, and
recreated again with their original scheduler on resume.
"""

import logging

from kubernetes import client, watch
from kubernetes.client.exceptions import ApiException

from arrears.concurrency import OperationContext
from arrears.errors import OperationCancelled
from arrears.kubernetes import DEBT_SCHEDULER
from arrears.kubernetes.base import get_annotations, is_not_found, request_options, strip_server_metadata
from arrears.kubernetes.connection import KubernetesConnection

logger = logging.getLogger(__name__)

PREVIOUS_SCHEDULER_ANNOTATION = "debt.sealos/previous-scheduler"

# Phase reported for pods parked on the debt scheduler
POD_PHASE_SUSPENDED = "Suspended"

RESUME_TIMEOUT = 10
# Watch duration when the context carries no deadline
DELETION_WATCH_TIMEOUT = 300


def is_owned(pod: client.V1Pod) -> bool:
    return bool(pod.metadata.owner_references)


def is_parked(pod: client.V1Pod) -> bool:
    """Whether a pod is scheduled by the debt scheduler."""
    return pod.spec.scheduler_name == DEBT_SCHEDULER


class PodResource:
    """Handler for the pods of a suspended namespace."""

    def __init__(self, connection: KubernetesConnection):
        self.connection = connection
        self.api = connection.core_v1_api

    def list_pods(self, ctx: OperationContext, namespace: str) -> list[client.V1Pod]:
        return self.api.list_namespaced_pod(namespace, **request_options(ctx)).items

    def suspend_orphans(self, ctx: OperationContext, namespace: str) -> None:
        """Recreate every pod without owner on the debt scheduler.

        Args:
            ctx: Context bounding the API calls.
            namespace: The tenant namespace.
        """
        for pod in self.list_pods(ctx, namespace):
            if is_parked(pod) or is_owned(pod):
                continue

            replacement = self.clone(pod)
            get_annotations(replacement)[PREVIOUS_SCHEDULER_ANNOTATION] = pod.spec.scheduler_name or ""
            replacement["spec"]["schedulerName"] = DEBT_SCHEDULER
            self.recreate(ctx, pod, replacement)
            logger.info(f"Parked orphan pod {namespace}/{pod.metadata.name} on {DEBT_SCHEDULER}")

    def delete_controlled(self, ctx: OperationContext, namespace: str) -> None:
        """Delete every pod owned by a controller and not already parked."""
        for pod in self.list_pods(ctx, namespace):
            if is_parked(pod) or not is_owned(pod):
                logger.debug(f"Skipping pod {namespace}/{pod.metadata.name}")
                continue
            logger.info(f"Deleting pod {namespace}/{pod.metadata.name}")
            self.api.delete_namespaced_pod(pod.metadata.name, namespace, **request_options(ctx))

    def resume(self, ctx: OperationContext, namespace: str) -> None:
        """Bring back the pods parked on the debt scheduler.

        Owned pods are deleted so their controller replaces them; orphans are
        recreated with the scheduler they had before suspension.

        Args:
            ctx: Context bounding the API calls.
            namespace: The tenant namespace.
        """
        pods = self.list_pods(ctx, namespace)
        resume_ctx = ctx.with_timeout(RESUME_TIMEOUT)
        for pod in pods:
            phase = pod.status.phase if pod.status else None
            if phase != POD_PHASE_SUSPENDED or not is_parked(pod):
                continue

            name = pod.metadata.name
            if is_owned(pod):
                self.api.delete_namespaced_pod(name, namespace, **request_options(resume_ctx))
                logger.info(f"Deleted parked pod {namespace}/{name}")
                continue

            replacement = self.clone(pod)
            annotations = get_annotations(replacement)
            replacement["spec"]["schedulerName"] = annotations.pop(PREVIOUS_SCHEDULER_ANNOTATION, "")
            if not replacement["spec"]["schedulerName"]:
                del replacement["spec"]["schedulerName"]
            self.recreate(resume_ctx, pod, replacement)
            logger.info(f"Recreated orphan pod {namespace}/{name}")

    def clone(self, pod: client.V1Pod) -> dict:
        """Copy a pod without its node binding, status or server metadata."""
        replacement = strip_server_metadata(self.connection.api_client.sanitize_for_serialization(pod))
        replacement.get("spec", {}).pop("nodeName", None)
        replacement.pop("status", None)
        return replacement

    def recreate(self, ctx: OperationContext, pod: client.V1Pod, replacement: dict) -> None:
        """Delete a pod and create its replacement once the deletion is observed.

        The watch starts from the resourceVersion read before the delete, so
        the Deleted event cannot be missed.

        Raises:
            OperationCancelled: If the deletion is not observed before the deadline.
        """
        namespace = pod.metadata.namespace
        name = pod.metadata.name
        field_selector = f"metadata.name={name}"

        listing = self.api.list_namespaced_pod(namespace, field_selector=field_selector, **request_options(ctx))
        try:
            self.api.delete_namespaced_pod(name, namespace, **request_options(ctx))
        except ApiException as e:
            if not is_not_found(e):
                raise
            logger.debug(f"Pod {namespace}/{name} was already deleted")
        else:
            self._wait_for_deletion(ctx, namespace, name, field_selector, listing.metadata.resource_version)

        self.api.create_namespaced_pod(namespace, replacement, **request_options(ctx))

    def _wait_for_deletion(
        self, ctx: OperationContext, namespace: str, name: str, field_selector: str, resource_version: str
    ) -> None:
        remaining = ctx.remaining()
        timeout = DELETION_WATCH_TIMEOUT if remaining is None else max(1, int(remaining))
        watcher = watch.Watch()
        try:
            for event in watcher.stream(
                self.api.list_namespaced_pod,
                namespace,
                field_selector=field_selector,
                resource_version=resource_version,
                timeout_seconds=timeout,
            ):
                ctx.check()
                if event["type"] == "DELETED" and event["object"].metadata.name == name:
                    return
        finally:
            watcher.stop()
        raise OperationCancelled(f"pod {namespace}/{name} was not deleted within {timeout}s")
