"""Resources package for Kubernetes resource handlers.

This package contains the handlers for the resource types that are suspended
outside of the strategies, the final deletion and namespace events.
"""

from arrears.kubernetes.resources.cronjobs import CronJobResource
from arrears.kubernetes.resources.deletion import DELETION_KINDS, delete_user_resources
from arrears.kubernetes.resources.events import create_transition_event
from arrears.kubernetes.resources.kubeblocks import KubeBlocksClusterResource
from arrears.kubernetes.resources.objectstorage import ObjectStorageAdmin, ObjectStorageUsers
from arrears.kubernetes.resources.pods import PodResource
from arrears.kubernetes.resources.quotas import QuotaResource

__all__ = [
    "CronJobResource",
    "DELETION_KINDS",
    "delete_user_resources",
    "create_transition_event",
    "KubeBlocksClusterResource",
    "ObjectStorageAdmin",
    "ObjectStorageUsers",
    "PodResource",
    "QuotaResource",
]
