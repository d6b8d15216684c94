"""Custom exceptions and the success/failure envelope for engine operations."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar


T = TypeVar("T")


class AppException(Exception):
    """Base application exception with structured error response."""

    error_code: str = "INTERNAL_ERROR"
    message: str = "An unexpected error occurred"
    retryable: bool = False

    def __init__(
        self,
        message: str | None = None,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message or self.message
        self.error_code = error_code or self.error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a problem+json style payload."""
        return {
            "error": self.error_code,
            "message": self.message,
            "retryable": self.retryable,
            **({"details": self.details} if self.details else {}),
        }


class NotFoundError(AppException):
    """Resource not found."""

    error_code = "NOT_FOUND"
    message = "Resource not found"


class ExternalServiceError(AppException):
    """External service error."""

    error_code = "EXTERNAL_SERVICE_ERROR"
    message = "External service temporarily unavailable"
    retryable = True


class SourceUnavailableError(ExternalServiceError):
    """A result source returned an unusable response."""

    error_code = "SOURCE_UNAVAILABLE"
    message = "Result source returned an invalid response"


class PersistenceError(AppException):
    """Persistent store operation failed."""

    error_code = "PERSISTENCE_ERROR"
    message = "Persistent store operation failed"
    retryable = True


class JobError(AppException):
    """Job execution failed."""

    error_code = "JOB_ERROR"
    message = "Job execution failed"


class InvariantViolation(AppException):
    """Internal state is inconsistent; the affected item is dropped."""

    error_code = "INVARIANT_VIOLATION"
    message = "Internal invariant violated"


@dataclass
class ServiceResult(Generic[T]):
    """Success/failure envelope returned by public engine operations."""

    success: bool
    data: T | None = None
    error: dict[str, Any] | None = None

    @classmethod
    def ok(cls, data: T | None = None) -> "ServiceResult[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, exc: Exception) -> "ServiceResult[T]":
        if not isinstance(exc, AppException):
            exc = AppException(message=str(exc) or exc.__class__.__name__)
        return cls(success=False, error=exc.to_dict())

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success}
        if self.success:
            payload["data"] = self.data
        else:
            payload["error"] = self.error
        return payload
