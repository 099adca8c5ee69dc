"""Idempotency cache.

This module keeps track of the namespaces and scopes believed to be suspended,
so that repeated triggers do not repeat work. The cache is an optimisation only:
when an entry is missing, callers fall back to the cluster state.
"""

import logging
import threading
import time

logger = logging.getLogger(__name__)

# Scope used for the namespace as a whole
SCOPE_ALL = "all"


class ResourceCache:
    """In-memory suspension cache keyed by namespace and scope."""

    def __init__(self, cleanup_interval: float = 600):
        """Initialize the cache.

        Args:
            cleanup_interval: Seconds after which the whole cache is emptied.
        """
        self.cleanup_interval = cleanup_interval
        self._entries: dict[str, dict[str, bool]] = {}
        self._lock = threading.Lock()
        self._last_cleanup = time.monotonic()

    def is_suspended(self, namespace: str, scope: str) -> tuple[bool, bool]:
        """Look up a scope.

        Args:
            namespace: The namespace.
            scope: The scope, a strategy name or SCOPE_ALL.

        Returns:
            A (suspended, found) pair.
        """
        with self._lock:
            scopes = self._entries.get(namespace)
            if scopes is None or scope not in scopes:
                return False, False
            return scopes[scope], True

    def set_suspended(self, namespace: str, scope: str, suspended: bool) -> None:
        """Record the suspension state of a scope.

        Args:
            namespace: The namespace.
            scope: The scope, a strategy name or SCOPE_ALL.
            suspended: Whether the scope is suspended.
        """
        with self._lock:
            self._entries.setdefault(namespace, {})[scope] = suspended
        self._maybe_cleanup()

    def clear_namespace(self, namespace: str) -> None:
        """Forget every scope of a namespace."""
        with self._lock:
            self._entries.pop(namespace, None)

    def clear(self) -> None:
        """Forget everything."""
        with self._lock:
            self._entries.clear()
            self._last_cleanup = time.monotonic()

    def _maybe_cleanup(self) -> None:
        """Empty the cache in the background once the cleanup interval has passed."""
        with self._lock:
            if time.monotonic() - self._last_cleanup <= self.cleanup_interval:
                return
            self._last_cleanup = time.monotonic()

        logger.debug("Cache cleanup interval elapsed, clearing suspension cache")
        threading.Thread(target=self.clear, name="arrears-cache-cleanup", daemon=True).start()
