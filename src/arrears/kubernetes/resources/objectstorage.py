"""Object storage user handling module.

The tenant's object storage user is disabled while the namespace is suspended.
The admin API is reached through an ObjectStorageAdmin built by an injected
factory, MinioObjectStorageAdmin when the object storage settings are present.
Deployments without object storage configure none.
"""

import abc
import base64
import json
import logging
import threading
from collections.abc import Callable, Collection

from minio import MinioAdmin
from minio.credentials import StaticProvider

from arrears.concurrency import OperationContext
from arrears.kubernetes.base import request_options
from arrears.kubernetes.connection import KubernetesConnection

logger = logging.getLogger(__name__)

ACCESS_KEY = "CONSOLE_ACCESS_KEY"
SECRET_KEY = "CONSOLE_SECRET_KEY"

STATUS_ENABLED = "enabled"
STATUS_DISABLED = "disabled"


class ObjectStorageAdmin(abc.ABC):
    """Admin API of the object storage service."""

    @abc.abstractmethod
    def list_users(self) -> Collection[str]:
        """Names of the existing users."""

    @abc.abstractmethod
    def set_user_status(self, user: str, status: str) -> None:
        """Enable or disable a user.

        Args:
            user: The user name.
            status: STATUS_ENABLED or STATUS_DISABLED.
        """


class MinioObjectStorageAdmin(ObjectStorageAdmin):
    """ObjectStorageAdmin backed by the MinIO admin API."""

    def __init__(self, endpoint: str, access_key: str, secret_key: str, secure: bool = False):
        """Initialize the client.

        Args:
            endpoint: host:port of the admin API, reached over plain HTTP unless secure is set.
            access_key: Admin access key.
            secret_key: Admin secret key.
            secure: Whether to use TLS.
        """
        self.client = MinioAdmin(endpoint, credentials=StaticProvider(access_key, secret_key), secure=secure)

    def list_users(self) -> Collection[str]:
        return set(json.loads(self.client.user_list() or "{}"))

    def set_user_status(self, user: str, status: str) -> None:
        if status == STATUS_ENABLED:
            self.client.user_enable(user)
        elif status == STATUS_DISABLED:
            self.client.user_disable(user)
        else:
            raise ValueError(f"Unknown object storage user status: {status}")


# (endpoint, access key, secret key) -> admin client
AdminFactory = Callable[[str, str, str], ObjectStorageAdmin]


def user_for_namespace(namespace: str) -> str | None:
    """Object storage user of a tenant namespace, the part after the first dash."""
    parts = namespace.split("-")
    if len(parts) < 2 or not parts[1]:
        return None
    return parts[1]


class ObjectStorageUsers:
    """Enables and disables the object storage user of a namespace."""

    def __init__(
        self,
        connection: KubernetesConnection,
        endpoint: str = "",
        secret_namespace: str = "",
        admin_secret: str = "",
        admin_factory: AdminFactory | None = None,
    ):
        """Initialize the handler.

        Args:
            connection: The Kubernetes connection to use
            endpoint: Internal endpoint of the admin API.
            secret_namespace: Namespace of the admin credentials secret.
            admin_secret: Name of the admin credentials secret.
            admin_factory: Builds the admin client from the endpoint and credentials.
        """
        self.connection = connection
        self.endpoint = endpoint
        self.secret_namespace = secret_namespace
        self.admin_secret = admin_secret
        self.admin_factory = admin_factory
        self._admin: ObjectStorageAdmin | None = None
        self._admin_lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return bool(self.endpoint and self.secret_namespace and self.admin_secret and self.admin_factory)

    def suspend(self, ctx: OperationContext, namespace: str) -> None:
        self.set_status(ctx, namespace, STATUS_DISABLED)

    def resume(self, ctx: OperationContext, namespace: str) -> None:
        self.set_status(ctx, namespace, STATUS_ENABLED)

    def set_status(self, ctx: OperationContext, namespace: str, status: str) -> None:
        """Set the status of the namespace's user, if it exists.

        Args:
            ctx: Context bounding the secret lookup.
            namespace: The tenant namespace.
            status: STATUS_ENABLED or STATUS_DISABLED.
        """
        if not self.enabled:
            logger.debug("Object storage endpoint, namespace, admin secret or client factory not configured, skipping")
            return

        user = user_for_namespace(namespace)
        if user is None:
            logger.warning(f"Cannot derive an object storage user from namespace {namespace}, skipping")
            return

        admin = self._get_admin(ctx)
        if user not in admin.list_users():
            logger.debug(f"Object storage user {user} does not exist")
            return
        admin.set_user_status(user, status)
        logger.info(f"Set object storage user {user} to {status}")

    def _get_admin(self, ctx: OperationContext) -> ObjectStorageAdmin:
        with self._admin_lock:
            if self._admin is None:
                secret = self.connection.core_v1_api.read_namespaced_secret(
                    self.admin_secret, self.secret_namespace, **request_options(ctx)
                )
                data = secret.data or {}
                access_key = base64.b64decode(data.get(ACCESS_KEY, "")).decode()
                secret_key = base64.b64decode(data.get(SECRET_KEY, "")).decode()
                self._admin = self.admin_factory(self.endpoint, access_key, secret_key)
            return self._admin
