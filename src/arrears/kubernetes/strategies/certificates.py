"""cert-manager suspension strategy.

Certificates are only annotated as suspended, so their TLS secrets survive and
no new ACME order is needed on resume. In-flight Challenges are deleted; cert-manager
recreates them when needed.
"""

from arrears.kubernetes.strategies.base import TableDrivenStrategy


class CertificateStrategy(TableDrivenStrategy):
    """Suspension strategy for Certificates and Challenges."""

    NAME = "cert-manager"
    SUPPORTED_KINDS = frozenset({"Certificate", "Challenge"})
