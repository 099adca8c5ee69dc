"""Suspension strategies.

The three strategies run in a fixed order: certificates and network together,
then RBAC on suspend; RBAC first, then certificates and network on resume.
"""

from arrears.kubernetes.strategies.base import SuspensionStrategy
from arrears.kubernetes.strategies.certificates import CertificateStrategy
from arrears.kubernetes.strategies.network import NetworkStrategy
from arrears.kubernetes.strategies.rbac import RBACStrategy

__all__ = [
    "SuspensionStrategy",
    "CertificateStrategy",
    "NetworkStrategy",
    "RBACStrategy",
]
