"""Exceptions raised by Arrears."""


class ArrearsError(Exception):
    """Base class for all controller errors."""


class LockBusyError(ArrearsError):
    """Another holder owns the lock for this namespace and operation."""

    def __init__(self, namespace: str, operation: str, lock_name: str):
        super().__init__(f"{operation} of namespace {namespace} is already running (lock {lock_name} is held)")
        self.namespace = namespace
        self.operation = operation
        self.lock_name = lock_name


class IdempotencyCheckError(ArrearsError):
    """The current suspension state could not be determined."""


class StrategyError(ArrearsError):
    """A suspension strategy failed."""

    def __init__(self, strategy: str, message: str):
        super().__init__(f"{strategy}: {message}")
        self.strategy = strategy


class BackupCorruptedError(ArrearsError):
    """A stored configuration backup is malformed."""


class FailureThresholdExceeded(ArrearsError):
    """Too many resources of one kind failed during a bulk operation."""

    def __init__(self, kind: str, failed: int, total: int):
        super().__init__(f"{failed} of {total} {kind} resources failed")
        self.kind = kind
        self.failed = failed
        self.total = total


class OperationCancelled(ArrearsError):
    """The operation deadline passed or a sibling task failed."""
