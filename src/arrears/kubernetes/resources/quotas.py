"""Zero quota handling module.

While a namespace is suspended a ResourceQuota with every limit set to zero
prevents the tenant from creating new workloads, volumes or load balancers.
"""

import logging

from kubernetes import client
from kubernetes.client.exceptions import ApiException

from arrears.concurrency import OperationContext
from arrears.kubernetes.base import is_conflict, is_not_found, request_options
from arrears.kubernetes.connection import KubernetesConnection

logger = logging.getLogger(__name__)

QUOTA_NAME = "debt-limit0"

ZERO_LIMITS = {
    "limits.cpu": "0",
    "limits.memory": "0",
    "requests.storage": "0",
    "ephemeral-storage": "0",
    "services.loadbalancers": "0",
}


class QuotaResource:
    """Handler for the zero ResourceQuota of suspended namespaces."""

    def __init__(self, connection: KubernetesConnection):
        self.connection = connection
        self.api = connection.core_v1_api

    def build(self, namespace: str) -> client.V1ResourceQuota:
        return client.V1ResourceQuota(
            metadata=client.V1ObjectMeta(name=QUOTA_NAME, namespace=namespace),
            spec=client.V1ResourceQuotaSpec(hard=dict(ZERO_LIMITS)),
        )

    def suspend(self, ctx: OperationContext, namespace: str) -> None:
        """Create the zero quota, or reset its limits if it already exists.

        Args:
            ctx: Context bounding the API calls.
            namespace: The tenant namespace.
        """
        try:
            self.api.create_namespaced_resource_quota(namespace, self.build(namespace), **request_options(ctx))
            logger.info(f"Created ResourceQuota {namespace}/{QUOTA_NAME}")
            return
        except ApiException as e:
            if not is_conflict(e):
                raise

        quota = self.api.read_namespaced_resource_quota(QUOTA_NAME, namespace, **request_options(ctx))
        if quota.spec is None:
            quota.spec = client.V1ResourceQuotaSpec()
        quota.spec.hard = dict(ZERO_LIMITS)
        self.api.replace_namespaced_resource_quota(QUOTA_NAME, namespace, quota, **request_options(ctx))
        logger.info(f"Reset limits of ResourceQuota {namespace}/{QUOTA_NAME}")

    def resume(self, ctx: OperationContext, namespace: str) -> None:
        """Delete the zero quota. A missing quota is not an error."""
        try:
            self.api.delete_namespaced_resource_quota(QUOTA_NAME, namespace, **request_options(ctx))
            logger.info(f"Deleted ResourceQuota {namespace}/{QUOTA_NAME}")
        except ApiException as e:
            if not is_not_found(e):
                raise
            logger.debug(f"ResourceQuota {namespace}/{QUOTA_NAME} does not exist")
