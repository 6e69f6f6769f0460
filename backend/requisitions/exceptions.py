"""
Oversight workflow exceptions.

Every message is safe to show to the end user; the only identifier a
message may carry is the requisition's own transaction id.
"""
from __future__ import annotations


class WorkflowError(Exception):
    """Base class for rejected workflow operations."""

    default_code = "workflow_error"

    def __init__(self, message: str, code: str | None = None, field: str | None = None):
        self.message = message
        self.code = code or self.default_code
        self.field = field
        super().__init__(message)

    def as_errors(self) -> dict[str, str]:
        return {self.field or self.code: self.message}


class ValidationError(WorkflowError):
    """Malformed input; the caller must correct it before trying again."""

    default_code = "validation_error"


class InvalidStateError(WorkflowError):
    """The record is not in a state that permits the requested action."""

    default_code = "invalid_state"


class ConflictError(WorkflowError):
    """
    Raised when an optimistic locking conflict occurs.
    This happens when a record is modified by another request between the
    time it was read and when it is being written back.
    """

    default_code = "conflict"

    def __init__(
        self,
        transaction_id: str | None,
        expected_version: int | None,
        actual_version: int | None,
        message: str | None = None,
    ):
        self.transaction_id = transaction_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        if message is None:
            label = transaction_id or "this requisition"
            message = (
                f"Requisition {label} was modified by another user. "
                "Please refresh and try again."
            )
        super().__init__(message, field="version")


class RecordNotFound(WorkflowError):
    default_code = "not_found"
