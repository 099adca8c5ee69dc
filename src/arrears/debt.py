"""Debt status values.

This module defines the states a tenant namespace moves through while its
billing account is in debt.
"""
from enum import Enum
from typing import Union


class DebtStatus(str, Enum):
    """Enumeration of the debt status annotation values.

    The billing service writes the request values (Suspend, Resume, ...) and the
    controller answers with the matching completed value once the work is done.
    """
    NORMAL = "Normal"
    SUSPEND = "Suspend"
    SUSPEND_COMPLETED = "SuspendCompleted"
    TERMINATE_SUSPEND = "TerminateSuspend"
    TERMINATE_SUSPEND_COMPLETED = "TerminateSuspendCompleted"
    RESUME = "Resume"
    RESUME_COMPLETED = "ResumeCompleted"
    FINAL_DELETION = "FinalDeletion"
    FINAL_DELETION_COMPLETED = "FinalDeletionCompleted"

    @classmethod
    def parse(cls, value: str | None) -> Union["DebtStatus", None]:
        """Convert an annotation value to a status.

        Args:
            value: The raw annotation value.

        Returns:
            The matching status, or None if the value is unknown.
        """
        try:
            return cls(value)
        except ValueError:
            return None

    @property
    def is_completed(self) -> bool:
        """Whether the status is terminal for a reconciliation pass."""
        return self in _COMPLETED

    @property
    def is_suspended(self) -> bool:
        """Whether the status means the namespace resources are suspended."""
        return self in (DebtStatus.SUSPEND_COMPLETED, DebtStatus.TERMINATE_SUSPEND_COMPLETED)

    def completed(self) -> "DebtStatus":
        """Get the completed value answering a request value.

        Returns:
            The completed status.
        """
        mapping = {
            DebtStatus.SUSPEND: DebtStatus.SUSPEND_COMPLETED,
            DebtStatus.TERMINATE_SUSPEND: DebtStatus.TERMINATE_SUSPEND_COMPLETED,
            DebtStatus.RESUME: DebtStatus.RESUME_COMPLETED,
            DebtStatus.FINAL_DELETION: DebtStatus.FINAL_DELETION_COMPLETED,
        }
        if self not in mapping:
            raise ValueError(f"Status {self.value} has no completed counterpart")
        return mapping[self]


_COMPLETED = frozenset(
    {
        DebtStatus.SUSPEND_COMPLETED,
        DebtStatus.TERMINATE_SUSPEND_COMPLETED,
        DebtStatus.RESUME_COMPLETED,
        DebtStatus.FINAL_DELETION_COMPLETED,
    }
)
