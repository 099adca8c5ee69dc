"""Tests for the Kubernetes connection module."""

import unittest
from unittest import mock

from kubernetes import config

from arrears.kubernetes.base import KubernetesResource
from arrears.kubernetes.connection import KubernetesConnection
from arrears.kubernetes.kinds import SERVICES


class TestKubernetesConnection(unittest.TestCase):
    """Test cases for the KubernetesConnection class."""

    @mock.patch("kubernetes.config.load_incluster_config")
    @mock.patch("kubernetes.config.load_kube_config")
    def test_falls_back_to_kubeconfig(self, mock_load_kube_config, mock_load_incluster_config):
        """Test that the kubeconfig is used outside of a cluster."""
        mock_load_incluster_config.side_effect = config.ConfigException()

        connection = KubernetesConnection()

        mock_load_kube_config.assert_called_once_with()
        self.assertIs(connection.api_client, connection.core_v1_api.api_client)
        self.assertTrue(connection.hostname)

    @mock.patch("kubernetes.config.load_incluster_config")
    @mock.patch("kubernetes.config.load_kube_config")
    def test_in_cluster(self, mock_load_kube_config, mock_load_incluster_config):
        """Test that the in-cluster configuration wins."""
        KubernetesConnection()

        mock_load_incluster_config.assert_called_once_with()
        mock_load_kube_config.assert_not_called()

    @mock.patch("kubernetes.config.load_incluster_config")
    @mock.patch("kubernetes.config.load_kube_config")
    def test_no_configuration(self, mock_load_kube_config, mock_load_incluster_config):
        """Test that a missing configuration is reported."""
        mock_load_incluster_config.side_effect = config.ConfigException()
        mock_load_kube_config.side_effect = config.ConfigException()

        with self.assertRaises(RuntimeError):
            KubernetesConnection()

    @mock.patch.dict("os.environ", {"HOSTNAME": "arrears-7d9f"})
    @mock.patch("kubernetes.config.load_incluster_config")
    def test_resource(self, _):
        """Test creating a resource client bound to the connection."""
        connection = KubernetesConnection()

        resource = connection.resource(SERVICES)

        self.assertIsInstance(resource, KubernetesResource)
        self.assertIs(resource.connection, connection)
        self.assertEqual(resource.gvr, SERVICES)
        self.assertEqual(connection.instance_id, "arrears-7d9f")


if __name__ == "__main__":
    unittest.main()
