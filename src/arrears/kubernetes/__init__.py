"""Kubernetes integration for Arrears.

This module holds the annotation and label keys shared by every component that
touches tenant resources.
"""

# Vendor prefix for every annotation written on tenant resources
VENDOR_PREFIX = "sealos.io"

# Marks a resource as suspended by the debt controller
SUSPENDED_ANNOTATION = f"{VENDOR_PREFIX}/debt-suspended"
# RFC3339 time at which the resource was suspended
SUSPENDED_TIME_ANNOTATION = f"{VENDOR_PREFIX}/debt-suspended-time"
# Where the resource's configuration backup lives ("annotation" or "configmap")
BACKUP_LOCATION_ANNOTATION = f"{VENDOR_PREFIX}/debt-backup-location"
# Suffix appended to a backup annotation key when the payload lives in a ConfigMap
CONFIGMAP_POINTER_SUFFIX = "-configmap"

# Labels carried by backup ConfigMaps
BACKUP_LABEL = f"{VENDOR_PREFIX}/debt-backup"
BACKUP_TYPE_LABEL = f"{VENDOR_PREFIX}/backup-type"
BACKUP_SOURCE_LABEL = f"{VENDOR_PREFIX}/source-resource"

# Scheduler that never binds pods, used to park orphan pods
DEBT_SCHEDULER = "debt-scheduler"

# Component name for events and lock holders
EVENT_COMPONENT = "arrears"

__all__ = [
    "VENDOR_PREFIX",
    "SUSPENDED_ANNOTATION",
    "SUSPENDED_TIME_ANNOTATION",
    "BACKUP_LOCATION_ANNOTATION",
    "CONFIGMAP_POINTER_SUFFIX",
    "BACKUP_LABEL",
    "BACKUP_TYPE_LABEL",
    "BACKUP_SOURCE_LABEL",
    "DEBT_SCHEDULER",
    "EVENT_COMPONENT",
]
