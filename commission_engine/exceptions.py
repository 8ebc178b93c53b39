"""
Typed errors raised by the commission engine.

Every error carries an HTTP status and a stable error code so the admin API
can render actionable messages without re-interpreting them.
"""

from typing import Any, Dict, Optional


class CommissionEngineError(Exception):
    """Base commission engine exception."""

    def __init__(
        self,
        message: str,
        status_code: int = 400,
        error_code: str = "COMMISSION_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class RejectedOverlap(CommissionEngineError):
    """An override window intersects an existing one for the same scope."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=409,
            error_code="REJECTED_OVERLAP",
            details=details,
        )


class InvalidRateBounds(CommissionEngineError):
    """A supplied percentage falls outside policy bounds."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=422,
            error_code="INVALID_RATE_BOUNDS",
            details=details,
        )


class InvalidValidityWindow(CommissionEngineError):
    """valid_from is not strictly before valid_to."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=422,
            error_code="INVALID_VALIDITY_WINDOW",
            details=details,
        )


class OverrideNotFound(CommissionEngineError):
    def __init__(self, override_id: int):
        super().__init__(
            message=f"Override #{override_id} not found",
            status_code=404,
            error_code="OVERRIDE_NOT_FOUND",
            details={"override_id": override_id},
        )


class UnresolvableLineItem(CommissionEngineError):
    """A line item lacks facts the resolution needs (e.g. a deleted category)."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=422,
            error_code="UNRESOLVABLE_LINE_ITEM",
            details=details,
        )


class AuditWriteFailure(CommissionEngineError):
    """
    The audit record could not be persisted.

    Fatal for the resolution: the caller must retry or fail the parent
    order-finalization step.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=503,
            error_code="AUDIT_WRITE_FAILURE",
            details=details,
        )


class AppendOnlyViolation(CommissionEngineError):
    """Something attempted to update or delete a written audit record."""

    def __init__(self, message: str):
        super().__init__(
            message=message,
            status_code=500,
            error_code="APPEND_ONLY_VIOLATION",
        )


class BulkRunNotFound(CommissionEngineError):
    def __init__(self, run_id: int):
        super().__init__(
            message=f"Bulk run #{run_id} not found",
            status_code=404,
            error_code="BULK_RUN_NOT_FOUND",
            details={"run_id": run_id},
        )


class InvalidOverrideScope(CommissionEngineError):
    """A scoped override without a scope id."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            status_code=422,
            error_code="INVALID_OVERRIDE_SCOPE",
            details=details,
        )


class InvalidCheckpoint(CommissionEngineError):
    def __init__(self, token: str):
        super().__init__(
            message="Checkpoint token is malformed",
            status_code=422,
            error_code="INVALID_CHECKPOINT",
            details={"token": token},
        )


class BulkRunNotCancellable(CommissionEngineError):
    """The run already finished; there is nothing left to cancel."""

    def __init__(self, run_id: int, status: str):
        super().__init__(
            message=f"Bulk run #{run_id} is {status} and cannot be cancelled",
            status_code=409,
            error_code="BULK_RUN_NOT_CANCELLABLE",
            details={"run_id": run_id, "status": status},
        )
