"""In-memory stand-ins for the Kubernetes API used by the tests."""

import copy
import itertools
import threading
from unittest.mock import MagicMock

from kubernetes import client
from kubernetes.client.exceptions import ApiException

from arrears.kubernetes.base import KubernetesResource


def not_found() -> ApiException:
    return ApiException(status=404, reason="Not Found")


def conflict() -> ApiException:
    return ApiException(status=409, reason="Conflict")


def server_error() -> ApiException:
    return ApiException(status=500, reason="Internal Server Error")


def _matches(labels: dict, selector: str | None) -> bool:
    if not selector:
        return True
    for term in selector.split(","):
        key, _, value = term.partition("=")
        if labels.get(key) != value:
            return False
    return True


class FakeResource(KubernetesResource):
    """Dictionary resource client backed by an in-memory store.

    Errors queued with fail() are raised by the next calls of the given verb.
    """

    _versions = itertools.count(1)

    def __init__(self, connection, gvr):
        super().__init__(connection, gvr)
        self.objects: dict[tuple[str, str], dict] = {}
        self.served = True
        self.failures: dict[str, list[Exception]] = {}
        self.calls: list[tuple[str, str, str | None]] = []
        self._lock = threading.Lock()

    def add(self, obj: dict) -> dict:
        """Store an object as if it had been created by someone else."""
        stored = copy.deepcopy(obj)
        stored.setdefault("apiVersion", self.gvr.api_version)
        stored.setdefault("kind", self.gvr.kind)
        stored["metadata"]["resourceVersion"] = str(next(self._versions))
        self.objects[(stored["metadata"]["namespace"], stored["metadata"]["name"])] = stored
        return copy.deepcopy(stored)

    def stored(self, namespace: str, name: str) -> dict | None:
        obj = self.objects.get((namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    def fail(self, verb: str, error: Exception, times: int = 1) -> None:
        self.failures.setdefault(verb, []).extend([error] * times)

    def verbs(self, verb: str) -> list[tuple[str, str, str | None]]:
        return [call for call in self.calls if call[0] == verb]

    def _call(self, verb, ctx, namespace, **kwargs):
        if ctx is not None:
            ctx.check()
        with self._lock:
            body = kwargs.get("body") or {}
            name = kwargs.get("name") or (body.get("metadata") or {}).get("name")
            self.calls.append((verb, namespace, name))
            queue = self.failures.get(verb)
            if queue:
                raise queue.pop(0)
            if not self.served:
                raise not_found()
            return getattr(self, f"_do_{verb}")(namespace, **kwargs)

    def _do_list(self, namespace, label_selector=None, **kwargs):
        items = [
            copy.deepcopy(obj)
            for (obj_namespace, _), obj in sorted(self.objects.items())
            if obj_namespace == namespace and _matches(obj["metadata"].get("labels") or {}, label_selector)
        ]
        return {"items": items, "metadata": {}}

    def _do_get(self, namespace, name, **kwargs):
        obj = self.objects.get((namespace, name))
        if obj is None:
            raise not_found()
        return copy.deepcopy(obj)

    def _do_create(self, namespace, body, **kwargs):
        name = body["metadata"]["name"]
        if (namespace, name) in self.objects:
            raise conflict()
        stored = copy.deepcopy(body)
        stored["metadata"]["namespace"] = namespace
        stored["metadata"]["resourceVersion"] = str(next(self._versions))
        self.objects[(namespace, name)] = stored
        return copy.deepcopy(stored)

    def _do_replace(self, namespace, name, body, **kwargs):
        current = self.objects.get((namespace, name))
        if current is None:
            raise not_found()
        if body["metadata"].get("resourceVersion") != current["metadata"]["resourceVersion"]:
            raise conflict()
        stored = copy.deepcopy(body)
        stored["metadata"]["resourceVersion"] = str(next(self._versions))
        self.objects[(namespace, name)] = stored
        return copy.deepcopy(stored)

    def _do_delete(self, namespace, name, **kwargs):
        if self.objects.pop((namespace, name), None) is None:
            raise not_found()
        return {}

    def _do_delete_collection(self, namespace, **kwargs):
        for key in [key for key in self.objects if key[0] == namespace]:
            del self.objects[key]
        return {}


class FakeConnection:
    """Connection serving FakeResource clients and MagicMock typed APIs.

    Namespaces added with add_namespace are served by the typed core API mock.
    """

    def __init__(self):
        self.core_v1_api = MagicMock()
        self.batch_v1_api = MagicMock()
        self.events_v1_api = MagicMock()
        self.custom_objects_api = MagicMock()
        self.api_client = client.ApiClient()
        self.hostname = "test-host"
        self.instance_id = "test-host"

        self.core_v1_api.list_namespaced_pod.return_value = client.V1PodList(items=[], metadata=client.V1ListMeta())
        self.batch_v1_api.list_namespaced_cron_job.return_value = client.V1CronJobList(
            items=[], metadata=client.V1ListMeta()
        )

        self.namespaces: dict[str, client.V1Namespace] = {}
        self.core_v1_api.read_namespace.side_effect = self._read_namespace
        self.core_v1_api.replace_namespace.side_effect = self._replace_namespace

        self._resources: dict[tuple[str, str], FakeResource] = {}
        self._lock = threading.Lock()

    def resource(self, gvr) -> FakeResource:
        with self._lock:
            key = (gvr.group, gvr.plural)
            if key not in self._resources:
                self._resources[key] = FakeResource(self, gvr)
            return self._resources[key]

    def add_namespace(self, name: str, annotations: dict | None = None, phase: str = "Active") -> None:
        self.namespaces[name] = client.V1Namespace(
            metadata=client.V1ObjectMeta(name=name, annotations=dict(annotations or {}), resource_version="1"),
            status=client.V1NamespaceStatus(phase=phase),
        )

    def namespace_annotations(self, name: str) -> dict:
        return dict(self.namespaces[name].metadata.annotations or {})

    def _read_namespace(self, name, **kwargs):
        if name not in self.namespaces:
            raise not_found()
        return copy.deepcopy(self.namespaces[name])

    def _replace_namespace(self, name, body, **kwargs):
        if name not in self.namespaces:
            raise not_found()
        self.namespaces[name] = copy.deepcopy(body)
        return copy.deepcopy(body)
