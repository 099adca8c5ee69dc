"""Kubernetes connection management.

This module handles the connection to the Kubernetes API.
"""
import logging
import os
import socket

from kubernetes import client, config

from arrears.kubernetes.base import KubernetesResource
from arrears.kubernetes.kinds import GroupVersionResource

logger = logging.getLogger(__name__)


class KubernetesConnection:
    """Connection manager for the Kubernetes API.

    This class manages authentication and connection to the Kubernetes API.
    It is shared among the strategies and resource handlers.
    """

    def __init__(self):
        """Initialize the Kubernetes connection.

        Attempts to connect to the Kubernetes API using in-cluster config first,
        falling back to kubeconfig for local development.
        """
        self._setup_connection()
        # Get hostname for event reporting
        self.hostname = socket.gethostname()
        # Unique identifier for this instance
        self.instance_id = os.environ.get("HOSTNAME", self.hostname)

    def _setup_connection(self) -> None:
        """Set up the connection to the Kubernetes API."""
        try:
            # Try to load in-cluster config first (for when running in a pod)
            config.load_incluster_config()
            logger.info("Using in-cluster configuration")
        except config.ConfigException:
            try:
                # Fall back to kubeconfig for local development
                config.load_kube_config()
                logger.info("Using kubeconfig configuration")
            except config.ConfigException as e:
                logger.error(
                    "Failed to load Kubernetes configuration. Ensure that the kubeconfig file is available and valid."
                )
                raise RuntimeError(
                    "Kubernetes configuration error: kubeconfig file is missing or invalid.") from e

        # Initialize API clients
        self.core_v1_api = client.CoreV1Api()
        self.batch_v1_api = client.BatchV1Api()
        self.events_v1_api = client.EventsV1Api()
        self.custom_objects_api = client.CustomObjectsApi()

        self.api_client = self.core_v1_api.api_client

    def resource(self, gvr: GroupVersionResource) -> KubernetesResource:
        """Get a dictionary based client for one resource type.

        Args:
            gvr: The resource type.

        Returns:
            A resource client bound to this connection.
        """
        return KubernetesResource(self, gvr)
