"""KubeBlocks cluster handling module.

Database clusters managed by KubeBlocks are stopped through a Stop OpsRequest
rather than by editing the cluster directly.
"""

import logging
from datetime import UTC, datetime

from kubernetes.client.exceptions import ApiException

from arrears.concurrency import OperationContext
from arrears.kubernetes.base import get_name, is_conflict, is_not_found
from arrears.kubernetes.connection import KubernetesConnection
from arrears.kubernetes.kinds import KUBEBLOCKS_CLUSTERS, KUBEBLOCKS_OPS_REQUESTS

logger = logging.getLogger(__name__)

STOPPED_PHASES = frozenset({"Stopped", "Stopping"})

# An OpsRequest is removed one second after it succeeds and aborted after an hour
OPS_TTL_AFTER_SUCCEED = 1
OPS_TTL_BEFORE_ABORT = 60 * 60


def stop_request_name(cluster_name: str, now: datetime | None = None) -> str:
    """Name of the Stop OpsRequest for a cluster, unique per hour."""
    now = now or datetime.now(UTC)
    return f"stop-{cluster_name}-{now.strftime('%Y-%m-%d-%H')}"


class KubeBlocksClusterResource:
    """Handler for KubeBlocks database clusters."""

    def __init__(self, connection: KubernetesConnection):
        self.connection = connection
        self.clusters = connection.resource(KUBEBLOCKS_CLUSTERS)
        self.ops_requests = connection.resource(KUBEBLOCKS_OPS_REQUESTS)

    def suspend(self, ctx: OperationContext, namespace: str) -> None:
        """Request a stop of every running cluster in a namespace.

        Clusters already stopped or stopping are skipped. Nothing happens when
        KubeBlocks is not installed.

        Args:
            ctx: Context bounding the API calls.
            namespace: The tenant namespace.
        """
        try:
            clusters = self.clusters.list(namespace, ctx=ctx)
        except ApiException as e:
            if is_not_found(e):
                logger.debug("KubeBlocks clusters are not served by the cluster, skipping")
                return
            raise

        for cluster in clusters:
            name = get_name(cluster)
            phase = (cluster.get("status") or {}).get("phase")
            if phase in STOPPED_PHASES:
                logger.debug(f"Cluster {namespace}/{name} is {phase}, skipping")
                continue
            self._request_stop(ctx, namespace, name)

    def _request_stop(self, ctx: OperationContext, namespace: str, cluster_name: str) -> None:
        ops_name = stop_request_name(cluster_name)
        body = {
            "apiVersion": KUBEBLOCKS_OPS_REQUESTS.api_version,
            "kind": KUBEBLOCKS_OPS_REQUESTS.kind,
            "metadata": {"name": ops_name, "namespace": namespace},
            "spec": {
                "clusterRef": cluster_name,
                "type": "Stop",
                "ttlSecondsAfterSucceed": OPS_TTL_AFTER_SUCCEED,
                "ttlSecondsBeforeAbort": OPS_TTL_BEFORE_ABORT,
            },
        }
        try:
            self.ops_requests.create(namespace, body, ctx=ctx)
            logger.info(f"Created OpsRequest {namespace}/{ops_name} to stop cluster {cluster_name}")
        except ApiException as e:
            if not is_conflict(e):
                raise
            logger.debug(f"OpsRequest {namespace}/{ops_name} already exists")
