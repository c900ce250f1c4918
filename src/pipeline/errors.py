"""Error taxonomy for the extraction, organization, and review pipeline.

Every pipeline failure carries a stable machine-readable ``code``, an
``ErrorCategory``, and a ``retryable`` flag. The job runner reads the flag to
decide between backoff and parking; synchronous callers (review resolution,
capture) map the category onto their transport's status codes.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Mapping, Sequence


class ErrorCategory(str, Enum):
    """High-level error categories shared by pipeline components."""

    VALIDATION = "validation"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    DEPENDENCY = "dependency"
    INTERNAL = "internal"


class PipelineError(Exception):
    """Base class for classified pipeline failures."""

    code = "INTERNAL_ERROR"
    category = ErrorCategory.INTERNAL
    retryable = False

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        """Return a serializable representation for logs and API surfaces."""
        return {
            "code": self.code,
            "category": self.category.value,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class SchemaViolation(PipelineError):
    """Oracle output failed schema validation after the feedback retry."""

    code = "SCHEMA_VIOLATION"
    category = ErrorCategory.VALIDATION

    def __init__(self, message: str, issues: Sequence[Mapping[str, Any]]) -> None:
        super().__init__(message, details={"issues": list(issues)})
        self.issues = list(issues)


class ValidationError(PipelineError):
    """Raised when caller-supplied input is malformed."""

    code = "VALIDATION_ERROR"
    category = ErrorCategory.VALIDATION


class NotFound(PipelineError):
    """Raised when a referenced row does not exist."""

    code = "NOT_FOUND"
    category = ErrorCategory.NOT_FOUND


class Conflict(PipelineError):
    """Raised on a state conflict, such as resolving a resolved review item."""

    code = "CONFLICT"
    category = ErrorCategory.CONFLICT


class ServiceUnavailable(PipelineError):
    """Raised when the queue or store cannot be reached at enqueue time."""

    code = "SERVICE_UNAVAILABLE"
    category = ErrorCategory.DEPENDENCY
    retryable = True


class OracleCallError(PipelineError):
    """Raised when the oracle call fails or returns no structured payload."""

    code = "ORACLE_UNAVAILABLE"
    category = ErrorCategory.DEPENDENCY
    retryable = True


class InternalError(PipelineError):
    """Raised for unclassified failures."""


def is_retryable(exc: BaseException) -> bool:
    """Return True when a failed job may succeed if attempted again.

    Unclassified exceptions (driver errors, network resets) are treated as
    transient.
    """
    if isinstance(exc, PipelineError):
        return exc.retryable
    return True


__all__ = [
    "Conflict",
    "ErrorCategory",
    "InternalError",
    "NotFound",
    "OracleCallError",
    "PipelineError",
    "SchemaViolation",
    "ServiceUnavailable",
    "ValidationError",
    "is_retryable",
]
