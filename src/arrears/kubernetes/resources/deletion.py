"""Final deletion of tenant resources.

Once the debt has led to termination, every workload, volume and routing
object of the namespace is removed with foreground propagation.
"""

import logging
from functools import partial

from kubernetes.client.exceptions import ApiException

from arrears.concurrency import OperationContext, run_concurrently
from arrears.kubernetes import kinds
from arrears.kubernetes.base import is_not_found
from arrears.kubernetes.connection import KubernetesConnection
from arrears.kubernetes.kinds import GroupVersionResource

logger = logging.getLogger(__name__)

DELETION_KINDS: tuple[GroupVersionResource, ...] = (
    kinds.KUBEBLOCKS_BACKUPS,
    kinds.KUBEBLOCKS_CLUSTERS,
    kinds.KUBEBLOCKS_BACKUP_SCHEDULES,
    kinds.DEVBOXES,
    kinds.DEVBOX_RELEASES,
    kinds.CRON_JOBS,
    kinds.OBJECT_STORAGE_USERS,
    kinds.DEPLOYMENTS,
    kinds.STATEFUL_SETS,
    kinds.PERSISTENT_VOLUME_CLAIMS,
    kinds.SERVICES,
    kinds.INGRESSES,
    kinds.ISSUERS,
    kinds.CERTIFICATES,
    kinds.HORIZONTAL_POD_AUTOSCALERS,
    kinds.APP_INSTANCES,
    kinds.JOBS,
    kinds.APPS,
)


def delete_kind(connection: KubernetesConnection, gvr: GroupVersionResource, namespace: str, ctx: OperationContext):
    """Delete every object of one kind. Kinds the cluster does not serve are ignored."""
    try:
        connection.resource(gvr).delete_collection(namespace, ctx=ctx)
    except ApiException as e:
        if not is_not_found(e):
            raise RuntimeError(f"failed to delete {gvr.plural}: {e}") from e
        logger.debug(f"Resource type {gvr} is not served by the cluster, nothing to delete")
        return
    logger.info(f"Deleted all {gvr.plural} in namespace {namespace}")


def delete_user_resources(
    connection: KubernetesConnection,
    ctx: OperationContext,
    namespace: str,
    deletion_kinds: tuple[GroupVersionResource, ...] = DELETION_KINDS,
) -> None:
    """Delete the tenant resources of a namespace, all kinds in parallel.

    A failing kind does not stop the others.

    Args:
        connection: The Kubernetes connection to use
        ctx: Context bounding the API calls.
        namespace: The tenant namespace.
        deletion_kinds: Resource types to delete.

    Raises:
        RuntimeError: The first deletion that failed.
    """
    tasks = {gvr.plural: partial(delete_kind, connection, gvr, namespace) for gvr in deletion_kinds}
    run_concurrently(ctx, tasks, cancel_on_error=False)
