"""Tests for the network suspension strategy."""

import copy
import json
import unittest

from arrears.cache import ResourceCache
from arrears.concurrency import OperationContext
from arrears.config import SuspensionConfig
from arrears.errors import BackupCorruptedError, FailureThresholdExceeded
from arrears.kubernetes import BACKUP_LABEL, SUSPENDED_ANNOTATION
from arrears.kubernetes.backup import BackupCodec
from arrears.kubernetes.kinds import CONFIGMAPS, DESTINATION_RULES, GATEWAYS, INGRESSES, SERVICES
from arrears.kubernetes.strategies import NetworkStrategy
from arrears.kubernetes.strategies.network import LABELS_BACKUP_ANNOTATION
from fakes import FakeConnection, server_error

PORTS_KEY = "sealos.io/debt-original-ports"


def service(name, ports=None, labels=None, annotations=None):
    return {
        "metadata": {
            "name": name,
            "namespace": "ns-user1",
            "labels": dict(labels or {}),
            "annotations": dict(annotations or {}),
        },
        "spec": {
            "clusterIP": "10.96.0.10",
            "ports": ports if ports is not None else [{"name": "http", "port": 80, "targetPort": 8080}],
        },
    }


class TestNetworkStrategy(unittest.TestCase):
    """Test cases for NetworkStrategy."""

    def setUp(self):
        """Set up the test."""
        self.connection = FakeConnection()
        self.cache = ResourceCache()
        self.codec = BackupCodec(self.connection)
        self.strategy = self.make_strategy(SuspensionConfig.default())
        self.services = self.connection.resource(SERVICES)
        self.ingresses = self.connection.resource(INGRESSES)
        self.ctx = OperationContext.background()

    def make_strategy(self, suspension_config):
        return NetworkStrategy(
            connection=self.connection,
            cache=self.cache,
            suspension_config=suspension_config,
            codec=self.codec,
        )

    def test_suspend_clears_ports(self):
        """Test that Service ports are backed up and cleared, keeping the cluster IP."""
        self.services.add(service("api", labels={"app": "api"}))

        self.strategy.suspend(self.ctx, "ns-user1")

        stored = self.services.stored("ns-user1", "api")
        annotations = stored["metadata"]["annotations"]
        self.assertEqual(stored["spec"]["ports"], [])
        self.assertEqual(stored["spec"]["clusterIP"], "10.96.0.10")
        self.assertEqual(annotations[SUSPENDED_ANNOTATION], "true")
        self.assertEqual(json.loads(annotations[PORTS_KEY]), [{"name": "http", "port": 80, "targetPort": 8080}])
        self.assertEqual(json.loads(annotations[LABELS_BACKUP_ANNOTATION]), {"app": "api"})

    def test_suspend_clears_ingress_rules(self):
        """Test that Ingress rules are backed up and cleared."""
        self.ingresses.add(
            {
                "metadata": {"name": "web", "namespace": "ns-user1"},
                "spec": {"rules": [{"host": "web.example.com"}], "tls": [{"hosts": ["web.example.com"]}]},
            }
        )

        self.strategy.suspend(self.ctx, "ns-user1")

        stored = self.ingresses.stored("ns-user1", "web")
        self.assertEqual(stored["spec"]["rules"], [])
        self.assertEqual(stored["spec"]["tls"], [{"hosts": ["web.example.com"]}])
        self.assertEqual(
            json.loads(stored["metadata"]["annotations"]["sealos.io/debt-original-hosts"]),
            [{"host": "web.example.com"}],
        )

    def test_mark_only_kinds(self):
        """Test that DestinationRules are annotated without touching their spec."""
        rules = self.connection.resource(DESTINATION_RULES)
        rules.add({"metadata": {"name": "api", "namespace": "ns-user1"}, "spec": {"host": "api"}})

        self.strategy.suspend(self.ctx, "ns-user1")

        stored = rules.stored("ns-user1", "api")
        self.assertEqual(stored["spec"], {"host": "api"})
        self.assertEqual(stored["metadata"]["annotations"][SUSPENDED_ANNOTATION], "true")

    def test_system_services_untouched(self):
        """Test that cluster services are never suspended."""
        for name in ("kubernetes", "kube-dns", "kube-proxy"):
            self.services.add(service(name))

        self.strategy.suspend(self.ctx, "ns-user1")

        self.assertEqual(self.services.verbs("replace"), [])

    def test_suspend_then_resume_restores(self):
        """Test that resume gives back exactly what suspend removed."""
        originals = {
            "api": service("api", labels={"app": "api"}, annotations={"owner": "tenant"}),
            "db": service("db", ports=[{"port": 5432}]),
            "headless": service("headless"),
        }
        del originals["headless"]["spec"]["ports"]
        for obj in originals.values():
            self.services.add(obj)
        self.connection.resource(GATEWAYS).add(
            {"metadata": {"name": "gw", "namespace": "ns-user1"}, "spec": {"servers": [{"port": {"number": 443}}]}}
        )

        self.strategy.suspend(self.ctx, "ns-user1")
        self.strategy.resume(self.ctx, "ns-user1")

        for name, original in originals.items():
            stored = self.services.stored("ns-user1", name)
            with self.subTest(service=name):
                self.assertEqual(stored["spec"], original["spec"])
                self.assertEqual(stored["metadata"]["annotations"], original["metadata"]["annotations"])
                self.assertEqual(stored["metadata"]["labels"], original["metadata"]["labels"])
        gateway = self.connection.resource(GATEWAYS).stored("ns-user1", "gw")
        self.assertEqual(gateway["spec"], {"servers": [{"port": {"number": 443}}]})
        self.assertEqual(gateway["metadata"]["annotations"], {})

    def test_resume_merges_labels(self):
        """Test that labels changed while suspended keep their current value."""
        obj = service(
            "api",
            labels={"app": "api-v2"},
            annotations={
                SUSPENDED_ANNOTATION: "true",
                LABELS_BACKUP_ANNOTATION: json.dumps({"app": "api", "tier": "backend"}),
                PORTS_KEY: json.dumps([{"port": 80}]),
            },
            ports=[],
        )
        self.services.add(obj)

        self.strategy.resume(self.ctx, "ns-user1")

        stored = self.services.stored("ns-user1", "api")
        self.assertEqual(stored["metadata"]["labels"], {"app": "api-v2", "tier": "backend"})
        self.assertEqual(stored["spec"]["ports"], [{"port": 80}])

    def test_large_backup_goes_to_configmap(self):
        """Test that backups above the per-kind limit use a ConfigMap, deleted on resume."""
        config = copy.deepcopy(SuspensionConfig.default())
        config.resources["services"].backup_size_limit = "10"
        strategy = self.make_strategy(config)
        self.services.add(service("api"))
        configmaps = self.connection.resource(CONFIGMAPS)

        strategy.suspend(self.ctx, "ns-user1")

        stored = self.services.stored("ns-user1", "api")
        self.assertNotIn(PORTS_KEY, stored["metadata"]["annotations"])
        self.assertEqual(stored["metadata"]["annotations"][PORTS_KEY + "-configmap"], "debt-backup-service-api")
        backup = configmaps.stored("ns-user1", "debt-backup-service-api")
        self.assertEqual(backup["metadata"]["labels"][BACKUP_LABEL], "true")

        strategy.resume(self.ctx, "ns-user1")

        self.assertEqual(
            self.services.stored("ns-user1", "api")["spec"]["ports"],
            [{"name": "http", "port": 80, "targetPort": 8080}],
        )
        self.assertIsNone(configmaps.stored("ns-user1", "debt-backup-service-api"))

    def test_failures_below_threshold(self):
        """Test that a minority of failures does not fail the kind."""
        for name in ("a", "b", "c"):
            self.services.add(service(name))
        self.services.fail("replace", server_error())

        self.strategy.suspend(self.ctx, "ns-user1")

        self.assertEqual(self.services.stored("ns-user1", "a")["spec"]["ports"][0]["port"], 80)
        self.assertEqual(self.services.stored("ns-user1", "b")["spec"]["ports"], [])
        self.assertEqual(self.services.stored("ns-user1", "c")["spec"]["ports"], [])

    def test_failures_above_threshold(self):
        """Test that a majority of failures fails the kind."""
        for name in ("a", "b", "c"):
            self.services.add(service(name))
        self.services.fail("replace", server_error(), times=2)

        with self.assertRaises(FailureThresholdExceeded) as raised:
            self.strategy.suspend(self.ctx, "ns-user1")

        self.assertEqual((raised.exception.failed, raised.exception.total), (2, 3))
        self.assertEqual(self.cache.is_suspended("ns-user1", "network"), (False, False))

    def test_required_backup_failure_fails_object(self):
        """Test that a kind requiring a backup is not cleared when the backup cannot be written."""
        config = copy.deepcopy(SuspensionConfig.default())
        config.resources["services"].backup_size_limit = "10"
        strategy = self.make_strategy(config)
        self.services.add(service("api"))
        self.connection.resource(CONFIGMAPS).fail("create", server_error())

        with self.assertRaises(FailureThresholdExceeded):
            strategy.suspend(self.ctx, "ns-user1")

        stored = self.services.stored("ns-user1", "api")
        self.assertEqual(stored["spec"]["ports"][0]["port"], 80)
        self.assertNotIn(SUSPENDED_ANNOTATION, stored["metadata"]["annotations"])

    def test_optional_backup_failure_keeps_field(self):
        """Test that a kind not requiring a backup is only marked when the backup cannot be written."""
        config = copy.deepcopy(SuspensionConfig.default())
        config.resources["services"].backup_size_limit = "10"
        config.resources["services"].backup_required = False
        strategy = self.make_strategy(config)
        self.services.add(service("api"))
        self.connection.resource(CONFIGMAPS).fail("create", server_error())

        with self.assertLogs("arrears.kubernetes.strategies.network", level="WARNING"):
            strategy.suspend(self.ctx, "ns-user1")

        stored = self.services.stored("ns-user1", "api")
        self.assertEqual(stored["metadata"]["annotations"][SUSPENDED_ANNOTATION], "true")
        self.assertEqual(stored["spec"]["ports"], [{"name": "http", "port": 80, "targetPort": 8080}])
        self.assertNotIn(PORTS_KEY + "-configmap", stored["metadata"]["annotations"])

    def test_failed_write_deletes_backup_configmap(self):
        """Test that the backup ConfigMap of an object that failed to suspend is deleted."""
        config = copy.deepcopy(SuspensionConfig.default())
        config.resources["services"].backup_size_limit = "10"
        strategy = self.make_strategy(config)
        configmaps = self.connection.resource(CONFIGMAPS)
        for name in ("a", "b", "c"):
            self.services.add(service(name))
        self.services.fail("replace", server_error())

        strategy.suspend(self.ctx, "ns-user1")

        self.assertIsNone(configmaps.stored("ns-user1", "debt-backup-service-a"))
        self.assertIsNotNone(configmaps.stored("ns-user1", "debt-backup-service-b"))

        strategy.resume(self.ctx, "ns-user1")

        self.assertEqual(configmaps.objects, {})

    def test_corrupted_backup_aborts_resume(self):
        """Test that a corrupted backup is never silently dropped."""
        self.services.add(
            service("api", ports=[], annotations={SUSPENDED_ANNOTATION: "true", PORTS_KEY: "{not json"})
        )

        with self.assertRaises(BackupCorruptedError):
            self.strategy.resume(self.ctx, "ns-user1")

        self.assertEqual(self.services.verbs("replace"), [])


if __name__ == "__main__":
    unittest.main()
