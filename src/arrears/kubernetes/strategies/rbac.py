"""RBAC suspension strategy.

Tenant RoleBindings are pointed at a read-only Role while the namespace is
suspended. The roleRef of a RoleBinding cannot be changed in place, so each
binding is deleted and created again with the new reference.
"""

import copy
import logging

from kubernetes.client.exceptions import ApiException

from arrears.concurrency import OperationContext
from arrears.errors import BackupCorruptedError
from arrears.kubernetes import VENDOR_PREFIX
from arrears.kubernetes.backup import BackupCodec
from arrears.kubernetes.base import get_name, is_conflict, is_not_found, strip_server_metadata
from arrears.kubernetes.kinds import ROLE_BINDINGS, ROLES
from arrears.kubernetes.strategies.base import SuspensionStrategy, is_marked, mark, unmark

logger = logging.getLogger(__name__)

RESTRICTED_ROLE_NAME = "debt-restricted-role"
RESTRICTED_LABEL = "debt.sealos.io/restricted"
ROLE_REF_BACKUP_ANNOTATION = f"{VENDOR_PREFIX}/debt-original-role-ref"

SYSTEM_BINDING_PREFIXES = ("system:", "cluster-", "kubeadm:", "sealos-system-")
SYSTEM_ROLE_MARKERS = ("system", "admin", "cluster")

RESTRICTED_RULES = [
    {
        "apiGroups": [""],
        "resources": ["pods", "services", "configmaps", "secrets"],
        "verbs": ["get", "list", "watch"],
    },
    {
        "apiGroups": ["networking.k8s.io"],
        "resources": ["ingresses"],
        "verbs": ["get", "list", "watch"],
    },
    {
        "apiGroups": ["networking.istio.io"],
        "resources": ["gateways", "virtualservices"],
        "verbs": ["get", "list", "watch"],
    },
]


def is_system_role_binding(binding: dict) -> bool:
    """Check whether a RoleBinding belongs to the platform rather than the tenant.

    Args:
        binding: The RoleBinding.

    Returns:
        True if the binding must be left alone.
    """
    name = get_name(binding)
    if name.startswith(SYSTEM_BINDING_PREFIXES):
        return True
    role_name = (binding.get("roleRef") or {}).get("name", "").lower()
    return any(marker in role_name for marker in SYSTEM_ROLE_MARKERS)


class RBACStrategy(SuspensionStrategy):
    """Suspension strategy restricting tenant RoleBindings to read-only access."""

    NAME = "rbac"
    SUPPORTED_KINDS = frozenset({"Role", "RoleBinding"})

    def __init__(self, *args, codec: BackupCodec, **kwargs):
        """Initialize the strategy.

        Args:
            *args: Positional arguments of SuspensionStrategy.
            codec: Codec storing the original role references.
            **kwargs: Keyword arguments of SuspensionStrategy.
        """
        super().__init__(*args, **kwargs)
        self.codec = codec
        self.roles = self.connection.resource(ROLES)
        self.role_bindings = self.connection.resource(ROLE_BINDINGS)

    def suspend_resources(self, ctx: OperationContext, namespace: str) -> None:
        self._ensure_restricted_role(ctx, namespace)

        restricted = 0
        for binding in self.role_bindings.list(namespace, ctx=ctx):
            name = get_name(binding)
            if is_system_role_binding(binding):
                logger.debug(f"Skipping system RoleBinding {namespace}/{name}")
                continue
            if is_marked(binding) or binding.get("roleRef", {}).get("name") == RESTRICTED_ROLE_NAME:
                logger.debug(f"Skipping RoleBinding {namespace}/{name} as it is already restricted")
                continue
            self._restrict(ctx, binding)
            restricted += 1

        self.metrics.record_suspended(namespace, "RoleBinding", self.NAME, restricted)
        logger.info(f"Restricted {restricted} RoleBindings in namespace {namespace}")

    def resume_resources(self, ctx: OperationContext, namespace: str) -> None:
        restored = 0
        for binding in self.role_bindings.list(namespace, ctx=ctx):
            if is_marked(binding):
                self._restore(ctx, binding)
                restored += 1

        self._delete_restricted_role_if_unused(ctx, namespace)
        self.metrics.record_suspended(namespace, "RoleBinding", self.NAME, 0)
        logger.info(f"Restored {restored} RoleBindings in namespace {namespace}")

    def _ensure_restricted_role(self, ctx: OperationContext, namespace: str) -> None:
        body = {
            "apiVersion": ROLES.api_version,
            "kind": ROLES.kind,
            "metadata": {
                "name": RESTRICTED_ROLE_NAME,
                "namespace": namespace,
                "labels": {RESTRICTED_LABEL: "true"},
            },
            "rules": copy.deepcopy(RESTRICTED_RULES),
        }
        try:
            self.roles.create(namespace, body, ctx=ctx)
            logger.info(f"Created restricted Role {namespace}/{RESTRICTED_ROLE_NAME}")
        except ApiException as e:
            if not is_conflict(e):
                raise
            logger.debug(f"Restricted Role {namespace}/{RESTRICTED_ROLE_NAME} already exists")

    def _restrict(self, ctx: OperationContext, binding: dict) -> None:
        """Back up a binding's role reference and subjects, then point it at the restricted Role."""
        replacement = _fresh_copy(binding)
        payload = [{"roleRef": binding["roleRef"], "subjects": binding.get("subjects") or []}]
        self.codec.backup(
            replacement,
            ROLE_REF_BACKUP_ANNOTATION,
            payload,
            ctx=ctx,
            backup_type="rbac",
            configmap_prefix="debt-rbac-backup",
        )
        mark(replacement)
        replacement["roleRef"] = {
            "apiGroup": "rbac.authorization.k8s.io",
            "kind": "Role",
            "name": RESTRICTED_ROLE_NAME,
        }
        try:
            self._recreate(ctx, binding, replacement)
        except Exception:
            configmap = self.codec.configmap_name(replacement, ROLE_REF_BACKUP_ANNOTATION)
            if configmap:
                self._discard_backup(ctx, binding["metadata"]["namespace"], configmap)
            raise
        logger.info(f"Restricted RoleBinding {binding['metadata']['namespace']}/{get_name(binding)}")

    def _discard_backup(self, ctx: OperationContext, namespace: str, configmap: str) -> None:
        """Delete the backup ConfigMap of a binding that could not be restricted."""
        try:
            self.codec.delete_configmap(namespace, configmap, ctx=ctx)
        except Exception as e:
            logger.error(f"Failed to delete backup ConfigMap {namespace}/{configmap}: {e}")

    def _restore(self, ctx: OperationContext, binding: dict) -> None:
        """Give a restricted binding its original role reference and subjects back."""
        namespace = binding["metadata"]["namespace"]
        name = get_name(binding)
        payload = self.codec.restore(binding, ROLE_REF_BACKUP_ANNOTATION, ctx=ctx)
        if payload is None:
            logger.error(f"RoleBinding {namespace}/{name} is restricted but has no backup, leaving it restricted")
            return
        if len(payload) != 1 or "roleRef" not in payload[0]:
            raise BackupCorruptedError(f"role reference backup of RoleBinding {namespace}/{name} is malformed")

        replacement = _fresh_copy(binding)
        replacement["roleRef"] = payload[0]["roleRef"]
        replacement["subjects"] = payload[0].get("subjects") or []
        configmap = self.codec.pop(replacement, ROLE_REF_BACKUP_ANNOTATION)
        unmark(replacement)

        self._recreate(ctx, binding, replacement)
        if configmap:
            self.codec.delete_configmap(namespace, configmap, ctx=ctx)
        logger.info(f"Restored RoleBinding {namespace}/{name} to role {replacement['roleRef'].get('name')}")

    def _recreate(self, ctx: OperationContext, current: dict, replacement: dict) -> None:
        """Replace a binding by deleting it and creating the new version."""
        namespace = current["metadata"]["namespace"]
        name = get_name(current)
        self.role_bindings.delete(name, namespace, ctx=ctx)
        try:
            self.role_bindings.create(namespace, replacement, ctx=ctx)
        except Exception:
            logger.error(f"Failed to recreate RoleBinding {namespace}/{name}, putting the previous version back")
            try:
                self.role_bindings.create(namespace, _fresh_copy(current), ctx=ctx)
            except Exception as e:
                logger.error(f"Failed to put RoleBinding {namespace}/{name} back: {e}")
            raise

    def _delete_restricted_role_if_unused(self, ctx: OperationContext, namespace: str) -> None:
        for binding in self.role_bindings.list(namespace, ctx=ctx):
            if binding.get("roleRef", {}).get("name") == RESTRICTED_ROLE_NAME:
                logger.info(
                    f"Keeping restricted Role in namespace {namespace}, still used by RoleBinding {get_name(binding)}"
                )
                return
        try:
            self.roles.delete(RESTRICTED_ROLE_NAME, namespace, ctx=ctx)
            logger.info(f"Deleted restricted Role {namespace}/{RESTRICTED_ROLE_NAME}")
        except ApiException as e:
            if not is_not_found(e):
                raise


def _fresh_copy(binding: dict) -> dict:
    return strip_server_metadata(copy.deepcopy(binding))
