"""Tests for the configuration module."""

import os
import unittest
from unittest import mock

from pydantic import ValidationError

from arrears.config import (
    DEFAULT_BACKUP_SIZE_LIMIT,
    ArrearsConfig,
    ResourceConfig,
    SuspensionConfig,
    SuspensionMode,
    parse_size,
)


class TestParseSize(unittest.TestCase):
    """Test cases for parse_size."""

    def test_units(self):
        """Test the supported size suffixes."""
        self.assertEqual(parse_size("512"), 512)
        self.assertEqual(parse_size("200KB"), 200 * 1024)
        self.assertEqual(parse_size("200Ki"), 200 * 1024)
        self.assertEqual(parse_size("1MB"), 1024 * 1024)
        self.assertEqual(parse_size(" 2 mi "), 2 * 1024 * 1024)
        self.assertEqual(parse_size(42), 42)

    def test_invalid(self):
        """Test that malformed sizes are rejected."""
        with self.assertRaises(ValueError):
            parse_size("lots")
        with self.assertRaises(ValueError):
            parse_size("10GB")


class TestArrearsConfig(unittest.TestCase):
    """Test cases for ArrearsConfig."""

    def test_default_values(self):
        """Test that default values are set correctly."""
        config = ArrearsConfig()
        self.assertEqual(config.system_namespace, "sealos-system")
        self.assertEqual(config.status_annotation, "debt.sealos/status")
        self.assertEqual(config.lock_timeout, 30)
        self.assertEqual(config.backup_size_limit, DEFAULT_BACKUP_SIZE_LIMIT)
        self.assertEqual(config.deletion_requeue_after, 600)
        self.assertIsNone(config.metrics_port)

    def test_validation(self):
        """Test that invalid values are rejected."""
        with self.assertRaises(ValidationError):
            ArrearsConfig(lock_timeout=0)
        with self.assertRaises(ValidationError):
            ArrearsConfig(max_concurrent_reconciles=-1)
        with self.assertRaises(ValidationError):
            ArrearsConfig(metrics_port=70000)
        with self.assertRaises(ValidationError):
            ArrearsConfig(status_annotation="")

    @mock.patch.dict(
        os.environ,
        {
            "ARREARS_SYSTEM_NAMESPACE": "billing-system",
            "ARREARS_STATUS_ANNOTATION": "debt.example/status",
            "ARREARS_LOCK_TIMEOUT": "45",
            "ARREARS_BACKUP_SIZE_LIMIT": "1MB",
            "ARREARS_METRICS_PORT": "9090",
            "HOSTNAME": "arrears-0",
            "OSInternalEndpoint": "minio.objectstorage-system.svc:80",
            "OSNamespace": "objectstorage-system",
            "OSAdminSecret": "object-storage-sealos",
        },
        clear=True,
    )
    def test_from_env(self):
        """Test creating config from environment variables."""
        config = ArrearsConfig.from_env()
        self.assertEqual(config.system_namespace, "billing-system")
        self.assertEqual(config.status_annotation, "debt.example/status")
        self.assertEqual(config.lock_timeout, 45)
        self.assertEqual(config.backup_size_limit, 1024 * 1024)
        self.assertEqual(config.metrics_port, 9090)
        self.assertEqual(config.holder_id, "namespace-controller-arrears-0")
        self.assertEqual(config.object_storage_endpoint, "minio.objectstorage-system.svc:80")
        self.assertEqual(config.object_storage_namespace, "objectstorage-system")
        self.assertEqual(config.object_storage_admin_secret, "object-storage-sealos")

    @mock.patch.dict(os.environ, {}, clear=True)
    def test_from_env_defaults(self):
        """Test that an empty environment gives the defaults."""
        config = ArrearsConfig.from_env()
        self.assertEqual(config, ArrearsConfig(holder_id="namespace-controller"))


class TestSuspensionConfig(unittest.TestCase):
    """Test cases for the suspension table."""

    def test_default_table(self):
        """Test the built-in suspension table."""
        config = SuspensionConfig.default()
        self.assertEqual(config.resources["certificates"].strategy, SuspensionMode.MARK_SUSPENDED)
        self.assertEqual(config.resources["challenges"].strategy, SuspensionMode.DELETE)
        self.assertEqual(config.resources["services"].strategy, SuspensionMode.BACKUP_AND_CLEAR)
        self.assertTrue(config.resources["ingresses"].backup_required)
        self.assertEqual(config.resources["ingresses"].size_limit(1), 200 * 1024)

    def test_for_kinds(self):
        """Test selecting the entries of a strategy."""
        config = SuspensionConfig.default()
        selected = [plural for plural, _ in config.for_kinds(lambda kind: kind in ("Certificate", "Challenge"))]
        self.assertEqual(selected, ["certificates", "challenges"])

    def test_from_yaml(self):
        """Test parsing a suspension table document."""
        config = SuspensionConfig.from_yaml(
            "resources:\n"
            "  services:\n"
            "    gvr: v1/Service\n"
            "    strategy: backup_and_clear\n"
            "    backup_size_limit: 1KB\n"
        )
        settings = config.resources["services"]
        self.assertEqual(settings.kind, "Service")
        self.assertEqual(settings.size_limit(10), 1024)
        self.assertFalse(settings.backup_required)

    def test_from_yaml_invalid(self):
        """Test that malformed documents raise ValueError."""
        for document in (
            "resources: [",
            "- just a list",
            "resources:\n  services:\n    gvr: v1/Service\n    strategy: scale_down\n",
            "resources:\n  services:\n    gvr: Service\n    strategy: delete\n",
        ):
            with self.subTest(document=document):
                with self.assertRaises(ValueError):
                    SuspensionConfig.from_yaml(document)

    def test_resource_config_default_limit(self):
        """Test that an empty size limit falls back to the given default."""
        settings = ResourceConfig(gvr="networking.k8s.io/v1/Ingress", strategy="delete")
        self.assertEqual(settings.size_limit(4096), 4096)
        self.assertEqual(settings.kind, "Ingress")


if __name__ == "__main__":
    unittest.main()
