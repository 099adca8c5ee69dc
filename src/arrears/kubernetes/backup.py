"""Configuration backups for suspended resources.

A backup is the JSON encoded list removed from a resource when it is suspended
(Ingress rules, Service ports, ...). Small backups are stored in an annotation
on the resource itself. Backups larger than the size limit are stored in a
labelled ConfigMap and the resource only carries a pointer annotation.
"""

import hashlib
import json
import logging
import re
from typing import Any

from kubernetes.client.exceptions import ApiException

from arrears.concurrency import OperationContext
from arrears.errors import BackupCorruptedError
from arrears.kubernetes import (
    BACKUP_LABEL,
    BACKUP_LOCATION_ANNOTATION,
    BACKUP_SOURCE_LABEL,
    BACKUP_TYPE_LABEL,
    CONFIGMAP_POINTER_SUFFIX,
    VENDOR_PREFIX,
)
from arrears.kubernetes.base import get_annotations, is_conflict, is_not_found, now_rfc3339
from arrears.kubernetes.connection import KubernetesConnection
from arrears.kubernetes.kinds import (
    CONFIGMAPS,
    DESTINATION_RULES,
    GATEWAYS,
    INGRESSES,
    ROLE_BINDINGS,
    SERVICES,
    VIRTUAL_SERVICES,
)

logger = logging.getLogger(__name__)

BACKUP_DATA_KEY = "config"
BACKUP_TIME_ANNOTATION = f"{VENDOR_PREFIX}/backup-time"
BACKUP_SOURCE_ANNOTATION = f"{VENDOR_PREFIX}/backup-source"

LOCATION_ANNOTATION = "annotation"
LOCATION_CONFIGMAP = "configmap"

MAX_NAME_LENGTH = 63

_INVALID_NAME_CHARS = re.compile(r"[^a-z0-9.-]+")

# Kinds whose backups can be traced back to their source object
_SOURCE_KINDS = {
    gvr.kind: gvr for gvr in (INGRESSES, SERVICES, GATEWAYS, VIRTUAL_SERVICES, DESTINATION_RULES, ROLE_BINDINGS)
}


def backup_configmap_name(kind: str, name: str, prefix: str = "debt-backup") -> str:
    """Build the name of the ConfigMap holding a resource's backup.

    Names longer than the Kubernetes limit, or holding characters a ConfigMap
    name rejects, are sanitized, cut and suffixed with a short hash of the
    full name so that they stay unique and valid.

    Args:
        kind: Kind of the source resource.
        name: Name of the source resource.
        prefix: Name prefix.

    Returns:
        A valid ConfigMap name.
    """
    safe_name = sanitize_name(name)
    full_name = f"{prefix}-{kind.lower()}-{safe_name}"
    if safe_name == name and len(full_name) <= MAX_NAME_LENGTH:
        return full_name
    # Digest of the raw name, distinct for names that sanitize alike
    digest = hashlib.sha1(f"{prefix}-{kind.lower()}-{name}".encode("utf-8")).hexdigest()[:8]
    head = full_name[: MAX_NAME_LENGTH - len(digest) - 1].rstrip("-.")
    return f"{head}-{digest}"


def sanitize_name(name: str) -> str:
    """Map a resource name to the DNS-1123 alphabet used by ConfigMap names and label values.

    RoleBinding names may contain characters like ":" that other kinds reject.
    """
    return _INVALID_NAME_CHARS.sub("-", name.lower()).strip("-.")


def validate_payload(payload: Any) -> list[dict]:
    """Check that a payload is a list of objects.

    Args:
        payload: Decoded backup payload.

    Returns:
        The payload.

    Raises:
        BackupCorruptedError: If the payload has another shape.
    """
    if payload is None:
        raise BackupCorruptedError("backup payload is empty")
    if not isinstance(payload, list):
        raise BackupCorruptedError(f"backup payload must be a list, got {type(payload).__name__}")
    for index, item in enumerate(payload):
        if not isinstance(item, dict):
            raise BackupCorruptedError(f"backup item {index} is not an object")
    return payload


def decode_payload(data: str) -> list[dict]:
    try:
        payload = json.loads(data)
    except (TypeError, ValueError) as e:
        raise BackupCorruptedError(f"backup is not valid JSON: {e}") from e
    return validate_payload(payload)


class BackupCodec:
    """Stores and restores configuration backups of namespaced resources."""

    def __init__(self, connection: KubernetesConnection, size_limit: int = 200 * 1024):
        """Initialize the codec.

        Args:
            connection: The Kubernetes connection to use
            size_limit: Largest serialized backup in bytes stored inline
        """
        self.connection = connection
        self.configmaps = connection.resource(CONFIGMAPS)
        self.size_limit = size_limit

    def backup(
        self,
        resource: dict,
        annotation_key: str,
        payload: list[dict],
        ctx: OperationContext | None = None,
        size_limit: int | None = None,
        backup_type: str = "network-config",
        configmap_prefix: str = "debt-backup",
    ) -> str:
        """Record a backup on a resource.

        The resource dictionary is annotated in place. When the payload goes to a
        ConfigMap, the ConfigMap is written immediately; the caller writes the
        resource itself.

        Args:
            resource: The resource being suspended.
            annotation_key: Annotation holding the inline payload.
            payload: The configuration fragment to keep.
            ctx: Context bounding the API calls.
            size_limit: Overrides the codec's inline size limit.
            backup_type: Value of the backup type label on the ConfigMap.
            configmap_prefix: Prefix of the ConfigMap name.

        Returns:
            The backup location, "annotation" or "configmap".
        """
        validate_payload(payload)
        data = json.dumps(payload, separators=(",", ":"), sort_keys=True)
        limit = self.size_limit if size_limit is None else size_limit
        annotations = get_annotations(resource)

        if len(data.encode("utf-8")) <= limit:
            annotations[annotation_key] = data
            annotations.pop(annotation_key + CONFIGMAP_POINTER_SUFFIX, None)
            annotations[BACKUP_LOCATION_ANNOTATION] = LOCATION_ANNOTATION
            logger.debug(f"Backed up {_describe(resource)} in annotation {annotation_key} ({len(data)} bytes)")
            return LOCATION_ANNOTATION

        name = backup_configmap_name(resource["kind"], resource["metadata"]["name"], prefix=configmap_prefix)
        self._write_configmap(resource, name, data, backup_type, ctx)
        annotations.pop(annotation_key, None)
        annotations[annotation_key + CONFIGMAP_POINTER_SUFFIX] = name
        annotations[BACKUP_LOCATION_ANNOTATION] = LOCATION_CONFIGMAP
        logger.info(f"Backed up {_describe(resource)} in ConfigMap {name} ({len(data)} bytes)")
        return LOCATION_CONFIGMAP

    def restore(
        self, resource: dict, annotation_key: str, ctx: OperationContext | None = None
    ) -> list[dict] | None:
        """Load the backup recorded on a resource.

        Args:
            resource: The suspended resource.
            annotation_key: Annotation holding the inline payload.
            ctx: Context bounding the API calls.

        Returns:
            The payload, or None when the resource has no backup.

        Raises:
            BackupCorruptedError: If the stored payload is malformed.
        """
        annotations = resource.get("metadata", {}).get("annotations") or {}

        if annotation_key in annotations:
            return decode_payload(annotations[annotation_key])

        name = annotations.get(annotation_key + CONFIGMAP_POINTER_SUFFIX)
        if not name:
            return None

        namespace = resource["metadata"]["namespace"]
        try:
            configmap = self.configmaps.get(name, namespace, ctx=ctx)
        except ApiException as e:
            if is_not_found(e):
                logger.info(f"Backup ConfigMap {namespace}/{name} of {_describe(resource)} no longer exists")
                return None
            raise

        data = (configmap.get("data") or {}).get(BACKUP_DATA_KEY)
        if data is None:
            raise BackupCorruptedError(f"ConfigMap {namespace}/{name} has no {BACKUP_DATA_KEY} key")
        return decode_payload(data)

    def configmap_name(self, resource: dict, annotation_key: str) -> str | None:
        """Name of the ConfigMap a resource's backup points to, if any."""
        annotations = resource.get("metadata", {}).get("annotations") or {}
        return annotations.get(annotation_key + CONFIGMAP_POINTER_SUFFIX)

    def pop(self, resource: dict, annotation_key: str) -> str | None:
        """Remove the backup annotations from a resource.

        Args:
            resource: The resource being resumed, modified in place.
            annotation_key: Annotation holding the inline payload.

        Returns:
            The name of the ConfigMap to delete once the resource is written, if any.
        """
        annotations = get_annotations(resource)
        annotations.pop(annotation_key, None)
        annotations.pop(BACKUP_LOCATION_ANNOTATION, None)
        return annotations.pop(annotation_key + CONFIGMAP_POINTER_SUFFIX, None)

    def delete_configmap(self, namespace: str, name: str, ctx: OperationContext | None = None) -> None:
        """Delete a backup ConfigMap, ignoring one that is already gone."""
        try:
            self.configmaps.delete(name, namespace, ctx=ctx)
            logger.debug(f"Deleted backup ConfigMap {namespace}/{name}")
        except ApiException as e:
            if not is_not_found(e):
                raise

    def cleanup_orphaned_backups(self, namespace: str, ctx: OperationContext | None = None) -> int:
        """Delete backup ConfigMaps whose source resource no longer exists.

        Args:
            namespace: The namespace to clean.
            ctx: Context bounding the API calls.

        Returns:
            The number of deleted ConfigMaps.
        """
        cleaned = 0
        for configmap in self.configmaps.iter_resources(namespace, ctx=ctx, label_selector=f"{BACKUP_LABEL}=true"):
            source = (configmap["metadata"].get("annotations") or {}).get(BACKUP_SOURCE_ANNOTATION, "")
            kind, _, name = source.partition("/")
            gvr = _SOURCE_KINDS.get(kind)
            if gvr is None or not name:
                continue

            try:
                self.connection.resource(gvr).get(name, namespace, ctx=ctx)
                continue
            except ApiException as e:
                if not is_not_found(e):
                    logger.error(f"Failed to look up {source} in namespace {namespace}: {e}")
                    continue

            self.delete_configmap(namespace, configmap["metadata"]["name"], ctx=ctx)
            cleaned += 1
            logger.info(f"Deleted orphaned backup ConfigMap {namespace}/{configmap['metadata']['name']} of {source}")

        return cleaned

    def _write_configmap(
        self, resource: dict, name: str, data: str, backup_type: str, ctx: OperationContext | None
    ) -> None:
        """Create the backup ConfigMap, or update it when it already exists."""
        metadata = resource["metadata"]
        namespace = metadata["namespace"]
        body = {
            "apiVersion": "v1",
            "kind": "ConfigMap",
            "metadata": {
                "name": name,
                "namespace": namespace,
                "labels": {
                    BACKUP_LABEL: "true",
                    BACKUP_TYPE_LABEL: backup_type,
                    BACKUP_SOURCE_LABEL: sanitize_name(metadata["name"])[:MAX_NAME_LENGTH].rstrip("-."),
                },
                "annotations": {
                    BACKUP_TIME_ANNOTATION: now_rfc3339(),
                    BACKUP_SOURCE_ANNOTATION: f"{resource['kind']}/{metadata['name']}",
                },
            },
            "data": {BACKUP_DATA_KEY: data},
        }

        try:
            self.configmaps.create(namespace, body, ctx=ctx)
            return
        except ApiException as e:
            if not is_conflict(e):
                raise

        def refresh(existing: dict) -> None:
            existing["data"] = {BACKUP_DATA_KEY: data}
            get_annotations(existing)[BACKUP_TIME_ANNOTATION] = now_rfc3339()

        self.configmaps.update_with_retry(name, namespace, refresh, ctx=ctx)


def _describe(resource: dict) -> str:
    metadata = resource.get("metadata", {})
    return f"{resource.get('kind')} {metadata.get('namespace')}/{metadata.get('name')}"
