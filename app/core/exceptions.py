"""
Base exception classes for application-wide error handling.

Every domain error carries a human-readable message that is safe to show to
end users, a machine-readable error code, and a details dict that is meant
for logs and operators only.

Exception Hierarchy:
    BaseApplicationError (base)
    ├── ValidationError - Input validation failures
    ├── NotFoundError - Resource not found
    ├── ConflictError - State conflicts (concurrent modifications, in-flight work)
    └── ExternalServiceError - Third-party service failures

Usage:
    from core.exceptions import ValidationError, ConflictError

    raise ValidationError("Chunk index out of range", error_code="INVALID_CHUNK_INDEX")

    raise ConflictError(
        "Upload is already being merged",
        error_code="MERGE_IN_PROGRESS",
        details={"session_id": str(session_id)},
    )

Note:
    These exceptions are for domain/business logic errors.
    DRF handles API-layer exceptions (serialization, authentication, etc.).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any


class BaseApplicationError(Exception):
    """
    Base exception for all application-specific errors.

    Attributes:
        message: Human-readable error description, sanitized for end users
        error_code: Machine-readable code for client-side handling
        details: Additional error context for logs (ids, upstream codes, paths)
    """

    default_error_code: str = "APPLICATION_ERROR"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self, include_details: bool = False) -> dict[str, Any]:
        """
        Convert exception to dictionary for API response.

        Details are left out unless explicitly requested, since they may
        hold internal identifiers.

        Example:
            {
                "error": "Upload session has expired",
                "error_code": "SESSION_EXPIRED"
            }
        """
        result: dict[str, Any] = {
            "error": self.message,
            "error_code": self.error_code,
        }
        if include_details and self.details:
            result["details"] = self.details
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code!r}, "
            f"details={self.details!r})"
        )


class ValidationError(BaseApplicationError):
    """
    Raised when input validation fails.

    Use for:
    - Malformed chunk metadata (index, total, payload size)
    - Unknown or foreign upload sessions
    - Business rule violations (non-https media URL, caption too long)

    Note:
        For DRF serializer validation, use DRF's built-in validation.
        Use this for service-layer validation logic.
    """

    default_error_code: str = "VALIDATION_ERROR"


class NotFoundError(BaseApplicationError):
    """
    Raised when a requested resource is not found.

    Use for single-resource lookups where existence is expected,
    such as a publish job requested by id.
    """

    default_error_code: str = "NOT_FOUND"


class ConflictError(BaseApplicationError):
    """
    Raised when operation conflicts with current resource state.

    Use for:
    - Work already in flight for the same resource (merge, refresh)
    - Invalid state transitions
    - Lock contention

    Note:
        HTTP 409 Conflict is the appropriate status for these errors.
    """

    default_error_code: str = "CONFLICT"


class ExternalServiceError(BaseApplicationError):
    """
    Raised when an external service call fails.

    Note:
        Log the original error for debugging but don't expose
        internal details to clients in production.
        HTTP 502 Bad Gateway or 503 Service Unavailable are appropriate.
    """

    default_error_code: str = "EXTERNAL_SERVICE_ERROR"
