"""Kubernetes events handling module.

This module records the outcome of debt transitions as events on the tenant
namespace. Failing to record an event never fails the transition.
"""

import logging
from datetime import UTC, datetime

from kubernetes import client

from arrears.kubernetes import EVENT_COMPONENT
from arrears.kubernetes.connection import KubernetesConnection

logger = logging.getLogger(__name__)

# Constants for event types
EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"

# Constants for event reasons
EVENT_REASON_SUSPENDED = "Suspended"
EVENT_REASON_RESUMED = "Resumed"
EVENT_REASON_DELETED = "Deleted"
EVENT_REASON_SUSPEND_FAILED = "SuspendFailed"
EVENT_REASON_RESUME_FAILED = "ResumeFailed"
EVENT_REASON_DELETE_FAILED = "DeleteFailed"

# Constants for event actions
EVENT_ACTION_SUSPENSION = "Suspension"
EVENT_ACTION_RESUMPTION = "Resumption"
EVENT_ACTION_DELETION = "Deletion"

_REASONS = {
    EVENT_ACTION_SUSPENSION: (EVENT_REASON_SUSPENDED, EVENT_REASON_SUSPEND_FAILED),
    EVENT_ACTION_RESUMPTION: (EVENT_REASON_RESUMED, EVENT_REASON_RESUME_FAILED),
    EVENT_ACTION_DELETION: (EVENT_REASON_DELETED, EVENT_REASON_DELETE_FAILED),
}


def create_transition_event(
    connection: KubernetesConnection,
    namespace: client.V1Namespace,
    action: str,
    message: str,
    failed: bool = False,
) -> None:
    """Record the outcome of a debt transition on a namespace.

    Args:
        connection: The Kubernetes connection to use
        namespace: The tenant namespace object
        action: One of the EVENT_ACTION_* constants
        message: Detailed message for the event
        failed: Whether the transition failed, which makes it a Warning
    """
    succeeded_reason, failed_reason = _REASONS[action]
    _create_event(
        connection=connection,
        namespace=namespace,
        event_type=EVENT_TYPE_WARNING if failed else EVENT_TYPE_NORMAL,
        reason=failed_reason if failed else succeeded_reason,
        message=message,
        action=action,
    )


def _create_event(
    connection: KubernetesConnection,
    namespace: client.V1Namespace,
    event_type: str,
    reason: str,
    message: str,
    action: str,
) -> None:
    name = namespace.metadata.name if namespace.metadata else ""
    try:
        if not name:
            logger.warning("Cannot create event for a namespace without name")
            return

        body = client.EventsV1Event(
            metadata=client.V1ObjectMeta(generate_name=f"{name}-", namespace=name),
            reason=reason,
            note=message,
            type=event_type,
            reporting_controller=EVENT_COMPONENT,
            reporting_instance=connection.hostname,
            action=action,
            regarding=client.V1ObjectReference(
                api_version="v1", kind="Namespace", name=name, uid=namespace.metadata.uid
            ),
            event_time=datetime.now(UTC),
        )

        connection.events_v1_api.create_namespaced_event(namespace=name, body=body)
        logger.debug(f"Created event for namespace {name}: {reason}")

    except Exception as e:
        logger.warning(f"Failed to create event for namespace {name}: {e}")
