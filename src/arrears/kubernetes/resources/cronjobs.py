"""Kubernetes CronJob handling module.

CronJobs are suspended through their suspend flag. The ones suspended by the
debt controller carry the suspension annotation, so that resume leaves alone
the CronJobs the tenant had suspended on purpose.
"""

import logging
from collections.abc import Iterator

from kubernetes import client

from arrears.concurrency import OperationContext
from arrears.kubernetes import SUSPENDED_ANNOTATION, SUSPENDED_TIME_ANNOTATION
from arrears.kubernetes.base import now_rfc3339, request_options
from arrears.kubernetes.connection import KubernetesConnection

logger = logging.getLogger(__name__)


class CronJobResource:
    """Handler for Kubernetes CronJob resources."""

    def __init__(self, connection: KubernetesConnection):
        """Initialize the CronJob resource handler.

        Args:
            connection: The Kubernetes connection to use
        """
        self.connection = connection
        # API client for cronjobs
        self.api = connection.batch_v1_api

    def iter_resources(
        self, ctx: OperationContext, namespace: str, batch_size: int = 100
    ) -> Iterator[client.V1CronJob]:
        """Iterate over the cronjobs of a namespace, one page at a time."""
        continue_token = None
        while True:
            result = self.api.list_namespaced_cron_job(
                namespace, limit=batch_size, _continue=continue_token, **request_options(ctx)
            )
            yield from result.items

            continue_token = result.metadata._continue
            if not continue_token:
                break

    def patch_resource(self, ctx: OperationContext, resource: client.V1CronJob, body: dict) -> None:
        """Patch a cronjob with the given body.

        Args:
            ctx: Context bounding the API call.
            resource: The cronjob to patch.
            body: The patch body to apply.
        """
        self.api.patch_namespaced_cron_job(
            name=resource.metadata.name,
            namespace=resource.metadata.namespace,
            body=body,
            **request_options(ctx),
        )

    def is_suspended(self, resource: client.V1CronJob) -> bool:
        return bool(resource.spec.suspend)

    def is_suspended_by_us(self, resource: client.V1CronJob) -> bool:
        annotations = resource.metadata.annotations or {}
        return annotations.get(SUSPENDED_ANNOTATION) == "true"

    def suspend(self, ctx: OperationContext, namespace: str) -> None:
        """Suspend every active cronjob of a namespace.

        Args:
            ctx: Context bounding the API calls.
            namespace: The tenant namespace.
        """
        for cronjob in self.iter_resources(ctx, namespace):
            if self.is_suspended(cronjob):
                continue
            self.patch_resource(
                ctx,
                cronjob,
                body={
                    "metadata": {
                        "annotations": {
                            SUSPENDED_ANNOTATION: "true",
                            SUSPENDED_TIME_ANNOTATION: now_rfc3339(),
                        }
                    },
                    "spec": {"suspend": True},
                },
            )
            logger.info(f"Suspended CronJob {namespace}/{cronjob.metadata.name}")

    def resume(self, ctx: OperationContext, namespace: str) -> None:
        """Re-enable the cronjobs suspended by the debt controller."""
        for cronjob in self.iter_resources(ctx, namespace):
            if not self.is_suspended_by_us(cronjob):
                continue
            # A null value removes the annotation in a merge patch
            self.patch_resource(
                ctx,
                cronjob,
                body={
                    "metadata": {"annotations": {SUSPENDED_ANNOTATION: None, SUSPENDED_TIME_ANNOTATION: None}},
                    "spec": {"suspend": False},
                },
            )
            logger.info(f"Resumed CronJob {namespace}/{cronjob.metadata.name}")
