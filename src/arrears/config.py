"""Configuration module for Arrears.

This module handles the configuration of Arrears through environment variables,
and the suspension table describing how each resource kind is suspended.
"""
import os
import re
from collections.abc import Callable
from enum import Enum
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

DEFAULT_BACKUP_SIZE_LIMIT = 200 * 1024

_SIZE_PATTERN = re.compile(r"^\s*(\d+)\s*(b|k|kb|ki|kib|m|mb|mi|mib)?\s*$", re.IGNORECASE)
_SIZE_UNITS = {
    None: 1,
    "b": 1,
    "k": 1024,
    "kb": 1024,
    "ki": 1024,
    "kib": 1024,
    "m": 1024 * 1024,
    "mb": 1024 * 1024,
    "mi": 1024 * 1024,
    "mib": 1024 * 1024,
}


def parse_size(value: str | int) -> int:
    """Convert a human readable size to bytes.

    Kilobyte and megabyte suffixes are binary multiples, so "200KB" is 204800.

    Args:
        value: A byte count or a string such as "200KB", "200Ki" or "1MB".

    Returns:
        The size in bytes.
    """
    if isinstance(value, int):
        return value
    match = _SIZE_PATTERN.match(value)
    if not match:
        raise ValueError(f"Invalid size: {value!r}")
    number, unit = match.groups()
    return int(number) * _SIZE_UNITS[unit.lower() if unit else None]


class ArrearsConfig(BaseModel):
    """Configuration class for Arrears.

    Attributes:
        system_namespace: Namespace holding lock records and the suspension table.
        status_annotation: Namespace annotation carrying the debt status.
        lock_timeout: Deadline in seconds for an operation protected by the lock.
        cache_cleanup_interval: Seconds after which the idempotency cache is emptied.
        backup_size_limit: Largest backup in bytes stored inline as an annotation.
        deletion_requeue_after: Seconds to wait before retrying a failed final deletion.
        status_update_timeout: Seconds spent retrying conflicting status updates.
        max_concurrent_reconciles: Number of namespaces reconciled in parallel.
        metrics_port: Port for the Prometheus endpoint, disabled when None.
        holder_id: Identity written into lock records.
        object_storage_endpoint: Internal endpoint of the object storage admin API.
        object_storage_namespace: Namespace of the object storage admin secret.
        object_storage_admin_secret: Name of the object storage admin secret.
    """
    system_namespace: str = Field(default="sealos-system")
    status_annotation: str = Field(default="debt.sealos/status")
    lock_timeout: float = Field(default=30)
    cache_cleanup_interval: float = Field(default=600)
    backup_size_limit: int = Field(default=DEFAULT_BACKUP_SIZE_LIMIT)
    deletion_requeue_after: float = Field(default=600)
    status_update_timeout: float = Field(default=5)
    max_concurrent_reconciles: int = Field(default=4)
    metrics_port: int | None = Field(default=None)
    holder_id: str = Field(default="")
    object_storage_endpoint: str = Field(default="")
    object_storage_namespace: str = Field(default="")
    object_storage_admin_secret: str = Field(default="")

    @field_validator("lock_timeout", "cache_cleanup_interval", "deletion_requeue_after", "status_update_timeout")
    def validate_positive_duration(cls, v):
        """Validate that durations are strictly positive"""
        if v <= 0:
            raise ValueError("Durations must be greater than zero")
        return v

    @field_validator("backup_size_limit", "max_concurrent_reconciles")
    def validate_positive_count(cls, v):
        """Validate that sizes and counts are strictly positive"""
        if v <= 0:
            raise ValueError("Value must be greater than zero")
        return v

    @field_validator("metrics_port")
    def validate_port(cls, v):
        """Validate the metrics port range"""
        if v is not None and not (0 < v < 65536):
            raise ValueError(f"Invalid port: {v}")
        return v

    @field_validator("system_namespace", "status_annotation")
    def validate_not_empty(cls, v):
        """Validate that required names are set"""
        if not v:
            raise ValueError("Value must not be empty")
        return v

    @classmethod
    def from_env(cls):
        """Create a config instance from environment variables."""
        metrics_port = os.getenv("ARREARS_METRICS_PORT")
        hostname = os.getenv("HOSTNAME", "")

        return cls(
            system_namespace=os.getenv("ARREARS_SYSTEM_NAMESPACE", "sealos-system"),
            status_annotation=os.getenv("ARREARS_STATUS_ANNOTATION", "debt.sealos/status"),
            lock_timeout=float(os.getenv("ARREARS_LOCK_TIMEOUT", "30")),
            cache_cleanup_interval=float(os.getenv("ARREARS_CACHE_CLEANUP_INTERVAL", "600")),
            backup_size_limit=parse_size(os.getenv("ARREARS_BACKUP_SIZE_LIMIT", str(DEFAULT_BACKUP_SIZE_LIMIT))),
            deletion_requeue_after=float(os.getenv("ARREARS_DELETION_REQUEUE_AFTER", "600")),
            status_update_timeout=float(os.getenv("ARREARS_STATUS_UPDATE_TIMEOUT", "5")),
            max_concurrent_reconciles=int(os.getenv("ARREARS_MAX_CONCURRENT_RECONCILES", "4")),
            metrics_port=int(metrics_port) if metrics_port else None,
            holder_id=f"namespace-controller-{hostname}" if hostname else "namespace-controller",
            object_storage_endpoint=os.getenv("OSInternalEndpoint", ""),
            object_storage_namespace=os.getenv("OSNamespace", ""),
            object_storage_admin_secret=os.getenv("OSAdminSecret", ""),
        )


class SuspensionMode(str, Enum):
    """How a resource kind is suspended."""
    MARK_SUSPENDED = "mark_suspended"
    DELETE = "delete"
    BACKUP_AND_CLEAR = "backup_and_clear"


class ResourceConfig(BaseModel):
    """Suspension settings for one resource kind.

    Attributes:
        gvr: "group/version/Kind", or "version/Kind" for the core group.
        strategy: The suspension mode.
        backup_required: Whether a configuration backup must be written.
        backup_size_limit: Largest inline backup, e.g. "200KB". Empty means the global limit.
    """
    gvr: str
    strategy: SuspensionMode
    backup_required: bool = False
    backup_size_limit: str = ""

    @field_validator("gvr")
    def validate_gvr(cls, v):
        """Validate the group/version/Kind format"""
        parts = v.split("/")
        if len(parts) not in (2, 3) or not all(parts):
            raise ValueError(f"Invalid gvr {v!r}, expected group/version/Kind or version/Kind")
        return v

    @field_validator("backup_size_limit")
    def validate_size(cls, v):
        """Validate the size format"""
        if v:
            parse_size(v)
        return v

    @property
    def kind(self) -> str:
        """The resource Kind named by the gvr."""
        return self.gvr.rsplit("/", 1)[1]

    def size_limit(self, default: int) -> int:
        """Get the inline backup limit in bytes.

        Args:
            default: Limit to use when none is configured.

        Returns:
            The limit in bytes.
        """
        return parse_size(self.backup_size_limit) if self.backup_size_limit else default


class SuspensionConfig(BaseModel):
    """The suspension table, keyed by plural resource name."""
    resources: dict[str, ResourceConfig]

    @classmethod
    def default(cls) -> "SuspensionConfig":
        """Build the built-in suspension table."""
        return cls.model_validate(DEFAULT_SUSPENSION_TABLE)

    @classmethod
    def from_yaml(cls, text: str) -> "SuspensionConfig":
        """Parse a suspension table document.

        Args:
            text: The YAML document.

        Returns:
            The parsed table.

        Raises:
            ValueError: If the document is not valid YAML or does not match the schema.
        """
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid suspension config YAML: {e}") from e
        if not isinstance(data, dict):
            raise ValueError("Suspension config must be a mapping")
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ValueError(f"Invalid suspension config: {e}") from e

    def for_kinds(self, supported: Callable[[str], bool]) -> list[tuple[str, ResourceConfig]]:
        """Get the entries whose Kind is accepted by a predicate.

        Args:
            supported: Called with each entry's Kind.

        Returns:
            (plural, settings) pairs in table order.
        """
        return [(plural, resource) for plural, resource in self.resources.items() if supported(resource.kind)]


DEFAULT_SUSPENSION_TABLE: dict[str, Any] = {
    "resources": {
        "certificates": {
            "gvr": "cert-manager.io/v1/Certificate",
            "strategy": "mark_suspended",
        },
        "challenges": {
            "gvr": "acme.cert-manager.io/v1/Challenge",
            "strategy": "delete",
        },
        "ingresses": {
            "gvr": "networking.k8s.io/v1/Ingress",
            "strategy": "backup_and_clear",
            "backup_required": True,
            "backup_size_limit": "200KB",
        },
        "services": {
            "gvr": "v1/Service",
            "strategy": "backup_and_clear",
            "backup_required": True,
            "backup_size_limit": "200KB",
        },
        "gateways": {
            "gvr": "networking.istio.io/v1beta1/Gateway",
            "strategy": "backup_and_clear",
            "backup_required": True,
            "backup_size_limit": "200KB",
        },
        "virtualservices": {
            "gvr": "networking.istio.io/v1beta1/VirtualService",
            "strategy": "backup_and_clear",
            "backup_required": True,
            "backup_size_limit": "200KB",
        },
        "destinationrules": {
            "gvr": "networking.istio.io/v1beta1/DestinationRule",
            "strategy": "mark_suspended",
        },
    }
}
