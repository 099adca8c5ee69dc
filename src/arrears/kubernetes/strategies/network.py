"""Network suspension strategy.

Traffic carrying fields are backed up and cleared so that a suspended tenant no
longer receives requests:

- Ingress: spec.rules
- Service: spec.ports (the cluster IP is kept)
- Gateway: spec.servers
- VirtualService: spec.http

Kinds without such a field, like DestinationRule, are only annotated.
"""

import json
import logging

from kubernetes.client.exceptions import ApiException

from arrears.concurrency import OperationContext
from arrears.config import ResourceConfig, SuspensionMode
from arrears.errors import BackupCorruptedError, FailureThresholdExceeded, OperationCancelled
from arrears.kubernetes import VENDOR_PREFIX
from arrears.kubernetes.backup import LOCATION_CONFIGMAP, BackupCodec
from arrears.kubernetes.base import get_annotations, get_labels, get_name
from arrears.kubernetes.kinds import GroupVersionResource
from arrears.kubernetes.strategies.base import TableDrivenStrategy

logger = logging.getLogger(__name__)

# Kind -> (spec field, backup annotation)
TRAFFIC_FIELDS: dict[str, tuple[str, str]] = {
    "Ingress": ("rules", f"{VENDOR_PREFIX}/debt-original-hosts"),
    "Service": ("ports", f"{VENDOR_PREFIX}/debt-original-ports"),
    "Gateway": ("servers", f"{VENDOR_PREFIX}/debt-original-servers"),
    "VirtualService": ("http", f"{VENDOR_PREFIX}/debt-original-http"),
}

LABELS_BACKUP_ANNOTATION = f"{VENDOR_PREFIX}/debt-original-labels"

SYSTEM_SERVICES = frozenset({"kubernetes", "kube-dns", "kube-proxy"})

# A kind fails when more than this share of its objects failed
FAILURE_THRESHOLD = 0.5


class NetworkStrategy(TableDrivenStrategy):
    """Suspension strategy for Ingresses, Services and Istio routing objects."""

    NAME = "network"
    SUPPORTED_KINDS = frozenset({"Ingress", "Service", "Gateway", "VirtualService", "DestinationRule"})

    def __init__(self, *args, codec: BackupCodec, **kwargs):
        """Initialize the strategy.

        Args:
            *args: Positional arguments of SuspensionStrategy.
            codec: Codec storing the cleared configuration.
            **kwargs: Keyword arguments of SuspensionStrategy.
        """
        super().__init__(*args, **kwargs)
        self.codec = codec

    def should_skip(self, obj: dict) -> bool:
        return get_name(obj) in SYSTEM_SERVICES

    def apply_each(self, ctx: OperationContext, gvr: GroupVersionResource, objects: list[dict], action) -> int:
        """Apply an action to each object, tolerating up to half of them failing.

        Corrupted backups and cancellation abort immediately.

        Raises:
            FailureThresholdExceeded: If more than half of the objects failed.
        """
        failed = 0
        for obj in objects:
            try:
                action(obj)
            except (BackupCorruptedError, OperationCancelled):
                raise
            except Exception as e:
                failed += 1
                logger.warning(
                    f"Failed to process {gvr.kind} {obj['metadata'].get('namespace')}/{get_name(obj)}: {e}"
                )

        total = len(objects)
        if total and failed / total > FAILURE_THRESHOLD:
            raise FailureThresholdExceeded(gvr.kind, failed, total)
        if failed:
            logger.warning(f"{failed} of {total} {gvr.kind} objects failed, below the failure threshold")
        return total - failed

    def prepare_suspend(
        self, ctx: OperationContext, gvr: GroupVersionResource, settings: ResourceConfig, obj: dict
    ) -> list[str]:
        """Back up and clear the traffic carrying field of an object.

        When the backup cannot be written, the object fails if its kind requires
        a backup. Otherwise the field is kept and the object is only annotated.
        """
        annotations = get_annotations(obj)
        labels = obj["metadata"].get("labels") or {}
        annotations[LABELS_BACKUP_ANNOTATION] = json.dumps(labels, sort_keys=True)

        if settings.strategy != SuspensionMode.BACKUP_AND_CLEAR or gvr.kind not in TRAFFIC_FIELDS:
            return []

        field, annotation_key = TRAFFIC_FIELDS[gvr.kind]
        spec = obj.setdefault("spec", {})
        original = spec.get(field)
        if not original:
            spec[field] = []
            return []

        try:
            location = self.codec.backup(
                obj,
                annotation_key,
                original,
                ctx=ctx,
                size_limit=settings.size_limit(self.codec.size_limit),
            )
        except ApiException as e:
            if settings.backup_required:
                raise
            logger.warning(
                f"Cannot back up {field} of {gvr.kind} {obj['metadata']['namespace']}/{get_name(obj)}, "
                f"leaving them in place: {e}"
            )
            return []

        spec[field] = []
        if location == LOCATION_CONFIGMAP:
            return [self.codec.configmap_name(obj, annotation_key)]
        return []

    def prepare_resume(
        self, ctx: OperationContext, gvr: GroupVersionResource, settings: ResourceConfig, obj: dict
    ) -> list[str]:
        leftovers = []
        if gvr.kind in TRAFFIC_FIELDS:
            field, annotation_key = TRAFFIC_FIELDS[gvr.kind]
            original = self.codec.restore(obj, annotation_key, ctx=ctx)
            spec = obj.setdefault("spec", {})
            if original is not None:
                spec[field] = original
            else:
                logger.debug(f"No {field} backup on {gvr.kind} {obj['metadata']['namespace']}/{get_name(obj)}")
                if spec.get(field) == []:
                    del spec[field]
            configmap = self.codec.pop(obj, annotation_key)
            if configmap:
                leftovers.append(configmap)

        self._merge_labels(obj)
        return leftovers

    def release_backups(self, ctx: OperationContext, namespace: str, configmaps: list[str]) -> None:
        for name in configmaps:
            self.codec.delete_configmap(namespace, name, ctx=ctx)

    @staticmethod
    def _merge_labels(obj: dict) -> None:
        """Put back labels removed while suspended, keeping current values on conflict."""
        raw = get_annotations(obj).pop(LABELS_BACKUP_ANNOTATION, None)
        if not raw:
            return
        try:
            original = json.loads(raw)
        except ValueError as e:
            raise BackupCorruptedError(f"label backup is not valid JSON: {e}") from e
        if not isinstance(original, dict):
            raise BackupCorruptedError("label backup must be an object")

        labels = get_labels(obj)
        for key, value in original.items():
            labels.setdefault(key, value)
