"""Resource types handled by the controller."""

import re
from dataclasses import dataclass

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


@dataclass(frozen=True)
class GroupVersionResource:
    """Identifies a Kubernetes resource type.

    Attributes:
        group: API group, empty for the core group.
        version: API version.
        plural: Plural resource name used in API paths.
        kind: Object Kind.
    """
    group: str
    version: str
    plural: str
    kind: str

    @property
    def api_version(self) -> str:
        """The apiVersion field of objects of this type."""
        return f"{self.group}/{self.version}" if self.group else self.version

    @property
    def is_core(self) -> bool:
        """Whether the type belongs to the core API group."""
        return not self.group

    @property
    def singular(self) -> str:
        """Snake case Kind, as used in the typed client method names."""
        return _CAMEL_BOUNDARY.sub("_", self.kind).lower()

    @classmethod
    def parse(cls, gvr: str, plural: str) -> "GroupVersionResource":
        """Build a resource type from a "group/version/Kind" string.

        Args:
            gvr: "group/version/Kind", or "version/Kind" for the core group.
            plural: Plural resource name.

        Returns:
            The resource type.
        """
        parts = gvr.split("/")
        if len(parts) == 3:
            return cls(group=parts[0], version=parts[1], plural=plural, kind=parts[2])
        if len(parts) == 2:
            return cls(group="", version=parts[0], plural=plural, kind=parts[1])
        raise ValueError(f"Invalid gvr {gvr!r}")

    def __str__(self) -> str:
        return f"{self.plural}.{self.group}/{self.version}" if self.group else f"{self.plural}/{self.version}"


CONFIGMAPS = GroupVersionResource("", "v1", "configmaps", "ConfigMap")
SERVICES = GroupVersionResource("", "v1", "services", "Service")
PERSISTENT_VOLUME_CLAIMS = GroupVersionResource("", "v1", "persistentvolumeclaims", "PersistentVolumeClaim")
INGRESSES = GroupVersionResource("networking.k8s.io", "v1", "ingresses", "Ingress")
GATEWAYS = GroupVersionResource("networking.istio.io", "v1beta1", "gateways", "Gateway")
VIRTUAL_SERVICES = GroupVersionResource("networking.istio.io", "v1beta1", "virtualservices", "VirtualService")
DESTINATION_RULES = GroupVersionResource("networking.istio.io", "v1beta1", "destinationrules", "DestinationRule")
ROLES = GroupVersionResource("rbac.authorization.k8s.io", "v1", "roles", "Role")
ROLE_BINDINGS = GroupVersionResource("rbac.authorization.k8s.io", "v1", "rolebindings", "RoleBinding")
CERTIFICATES = GroupVersionResource("cert-manager.io", "v1", "certificates", "Certificate")
ISSUERS = GroupVersionResource("cert-manager.io", "v1", "issuers", "Issuer")
CHALLENGES = GroupVersionResource("acme.cert-manager.io", "v1", "challenges", "Challenge")
KUBEBLOCKS_CLUSTERS = GroupVersionResource("apps.kubeblocks.io", "v1alpha1", "clusters", "Cluster")
KUBEBLOCKS_OPS_REQUESTS = GroupVersionResource("apps.kubeblocks.io", "v1alpha1", "opsrequests", "OpsRequest")
KUBEBLOCKS_BACKUPS = GroupVersionResource("dataprotection.kubeblocks.io", "v1alpha1", "backups", "Backup")
KUBEBLOCKS_BACKUP_SCHEDULES = GroupVersionResource(
    "dataprotection.kubeblocks.io", "v1alpha1", "backupschedules", "BackupSchedule"
)
DEVBOXES = GroupVersionResource("devbox.sealos.io", "v1alpha1", "devboxes", "Devbox")
DEVBOX_RELEASES = GroupVersionResource("devbox.sealos.io", "v1alpha1", "devboxreleases", "DevBoxRelease")
CRON_JOBS = GroupVersionResource("batch", "v1", "cronjobs", "CronJob")
JOBS = GroupVersionResource("batch", "v1", "jobs", "Job")
OBJECT_STORAGE_USERS = GroupVersionResource("objectstorage.sealos.io", "v1", "objectstorageusers", "ObjectStorageUser")
DEPLOYMENTS = GroupVersionResource("apps", "v1", "deployments", "Deployment")
STATEFUL_SETS = GroupVersionResource("apps", "v1", "statefulsets", "StatefulSet")
HORIZONTAL_POD_AUTOSCALERS = GroupVersionResource(
    "autoscaling", "v1", "horizontalpodautoscalers", "HorizontalPodAutoscaler"
)
APP_INSTANCES = GroupVersionResource("app.sealos.io", "v1", "instances", "Instance")
APPS = GroupVersionResource("app.sealos.io", "v1", "apps", "App")
