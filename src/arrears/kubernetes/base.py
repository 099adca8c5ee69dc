"""Base module for Kubernetes resources.

This module provides a dictionary based client covering every resource type the
controller touches, plus helpers shared by the strategies.
"""

import copy
import logging
from collections.abc import Iterator
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from kubernetes.client.exceptions import ApiException

from arrears.concurrency import OperationContext
from arrears.kubernetes.kinds import GroupVersionResource

if TYPE_CHECKING:
    from arrears.kubernetes.connection import KubernetesConnection

logger = logging.getLogger(__name__)

FOREGROUND = "Foreground"

# Metadata owned by the API server, dropped before an object is created again
SERVER_METADATA = ("resourceVersion", "uid", "creationTimestamp", "managedFields", "generation", "selfLink")


def is_not_found(error: Exception) -> bool:
    """Whether an error is a 404 from the API server."""
    return isinstance(error, ApiException) and error.status == 404


def is_conflict(error: Exception) -> bool:
    """Whether an error is a 409 (conflict or already exists) from the API server."""
    return isinstance(error, ApiException) and error.status == 409


def now_rfc3339() -> str:
    """Current UTC time formatted for annotations."""
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def request_options(ctx: OperationContext | None) -> dict[str, Any]:
    """Keyword arguments bounding a typed API call by the context deadline.

    Raises:
        OperationCancelled: If the context is cancelled or expired.
    """
    if ctx is None:
        return {}
    timeout = ctx.request_timeout()
    return {} if timeout is None else {"_request_timeout": timeout}


def strip_server_metadata(obj: dict) -> dict:
    """Remove server owned metadata in place so the object can be created again."""
    metadata = obj.setdefault("metadata", {})
    for key in SERVER_METADATA:
        metadata.pop(key, None)
    return obj


def get_name(obj: dict) -> str:
    return obj["metadata"]["name"]


def get_annotations(obj: dict) -> dict[str, str]:
    """Get the annotations of an object, creating the map if needed."""
    metadata = obj.setdefault("metadata", {})
    if metadata.get("annotations") is None:
        metadata["annotations"] = {}
    return metadata["annotations"]


def get_labels(obj: dict) -> dict[str, str]:
    """Get the labels of an object, creating the map if needed."""
    metadata = obj.setdefault("metadata", {})
    if metadata.get("labels") is None:
        metadata["labels"] = {}
    return metadata["labels"]


class KubernetesResource:
    """Client for one namespaced resource type, working on plain dictionaries.

    Core group types are served by the typed CoreV1Api and converted to
    dictionaries; every other group goes through the CustomObjectsApi.
    """

    def __init__(self, connection: "KubernetesConnection", gvr: GroupVersionResource):
        """Initialize the resource client.

        Args:
            connection: The Kubernetes connection to use
            gvr: The resource type handled by this client
        """
        self.connection = connection
        self.gvr = gvr

    def iter_resources(
        self,
        namespace: str,
        ctx: OperationContext | None = None,
        label_selector: str | None = None,
        batch_size: int = 100,
    ) -> Iterator[dict]:
        """Iterate over all resources in a namespace.

        Uses pagination to fetch resources in batches and yield them one by one
        to limit memory usage.

        Args:
            namespace: Namespace to get resources from.
            ctx: Context bounding the API calls.
            label_selector: Optional label selector.
            batch_size: Number of resources to fetch per API call.

        Yields:
            Resources, one at a time.
        """
        continue_token = None
        while True:
            kwargs: dict[str, Any] = {"limit": batch_size}
            if continue_token:
                kwargs["_continue"] = continue_token
            if label_selector:
                kwargs["label_selector"] = label_selector
            result = self._call("list", ctx, namespace=namespace, **kwargs)

            for item in result.get("items") or []:
                yield self._with_type(item)

            continue_token = (result.get("metadata") or {}).get("continue")
            if not continue_token:
                break

    def list(
        self, namespace: str, ctx: OperationContext | None = None, label_selector: str | None = None
    ) -> list[dict]:
        """List all resources in a namespace."""
        return list(self.iter_resources(namespace, ctx=ctx, label_selector=label_selector))

    def get(self, name: str, namespace: str, ctx: OperationContext | None = None) -> dict:
        return self._with_type(self._call("get", ctx, namespace=namespace, name=name))

    def create(self, namespace: str, body: dict, ctx: OperationContext | None = None) -> dict:
        return self._call("create", ctx, namespace=namespace, body=body)

    def replace(self, body: dict, ctx: OperationContext | None = None) -> dict:
        """Replace an object with the given body, which must carry its resourceVersion."""
        metadata = body["metadata"]
        return self._call("replace", ctx, namespace=metadata["namespace"], name=metadata["name"], body=body)

    def delete(
        self, name: str, namespace: str, ctx: OperationContext | None = None, propagation_policy: str | None = None
    ) -> None:
        body = {"propagationPolicy": propagation_policy} if propagation_policy else {}
        self._call("delete", ctx, namespace=namespace, name=name, body=body)

    def delete_collection(
        self, namespace: str, ctx: OperationContext | None = None, propagation_policy: str = FOREGROUND
    ) -> None:
        """Delete every object of this type in a namespace."""
        self._call("delete_collection", ctx, namespace=namespace, body={"propagationPolicy": propagation_policy})

    def _with_type(self, obj: dict) -> dict:
        """Fill in apiVersion and kind, which list responses omit on their items."""
        obj.setdefault("apiVersion", self.gvr.api_version)
        obj.setdefault("kind", self.gvr.kind)
        return obj

    def _call(self, verb: str, ctx: OperationContext | None, namespace: str, **kwargs) -> Any:
        """Dispatch a call to the typed core API or the custom objects API.

        Args:
            verb: One of list, get, create, replace, delete, delete_collection.
            ctx: Context bounding the call.
            namespace: The namespace.
            **kwargs: name, body and list options.

        Returns:
            The response as a dictionary.
        """
        kwargs.update(request_options(ctx))

        if self.gvr.is_core:
            method_prefix = {
                "list": "list_namespaced",
                "get": "read_namespaced",
                "create": "create_namespaced",
                "replace": "replace_namespaced",
                "delete": "delete_namespaced",
                "delete_collection": "delete_collection_namespaced",
            }[verb]
            method = getattr(self.connection.core_v1_api, f"{method_prefix}_{self.gvr.singular}")
            result = method(namespace=namespace, **kwargs)
            return self.connection.api_client.sanitize_for_serialization(result)

        method_name = {
            "list": "list_namespaced_custom_object",
            "get": "get_namespaced_custom_object",
            "create": "create_namespaced_custom_object",
            "replace": "replace_namespaced_custom_object",
            "delete": "delete_namespaced_custom_object",
            "delete_collection": "delete_collection_namespaced_custom_object",
        }[verb]
        method = getattr(self.connection.custom_objects_api, method_name)
        return method(
            group=self.gvr.group,
            version=self.gvr.version,
            namespace=namespace,
            plural=self.gvr.plural,
            **kwargs,
        )

    def update_with_retry(
        self,
        name: str,
        namespace: str,
        mutate,
        ctx: OperationContext | None = None,
        current: dict | None = None,
        attempts: int = 5,
    ) -> dict | None:
        """Read, mutate and replace an object, retrying on resourceVersion conflicts.

        Args:
            name: Object name.
            namespace: Object namespace.
            mutate: Callable receiving the object; returns False to skip the write.
            ctx: Context bounding the API calls.
            current: Already fetched copy of the object used for the first attempt.
            attempts: Maximum number of read-modify-write attempts.

        Returns:
            The replaced object, or None if mutate skipped the write.
        """
        for attempt in range(1, attempts + 1):
            if attempt == 1 and current is not None:
                obj = copy.deepcopy(current)
            else:
                obj = self.get(name, namespace, ctx=ctx)
            if mutate(obj) is False:
                return None
            try:
                return self.replace(obj, ctx=ctx)
            except ApiException as e:
                if not is_conflict(e) or attempt == attempts:
                    raise
                logger.debug(f"Conflict updating {self.gvr.kind} {namespace}/{name}, retrying ({attempt}/{attempts})")
        return None
