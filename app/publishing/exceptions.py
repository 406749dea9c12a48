"""
Publishing-specific exceptions.

Messages are shown to end users and therefore never contain internal ids,
storage paths, upstream log ids, or credential material. Anything an
operator needs goes into ``details``, which is logged but not returned.

Exception Hierarchy:
    ValidationError (core)
    ├── SessionExpiredError - Upload session reclaimed, client must restart
    └── MergeIntegrityError - Merged size did not match recorded chunk sizes
    ConflictError (core)
    └── MergeInProgressError - Another caller holds the merge flag
    ReconnectRequiredError - Refresh token expired or rejected; user must re-authorize
    ExternalServiceError (core)
    └── PlatformError - Base for platform API failures (adapter level)
        ├── PlatformRequestError - Platform rejected the request (permanent)
        │   └── UpstreamSubmissionError - Platform rejected the publish request
        ├── InvalidGrantError - Token endpoint rejected the refresh token
        └── TransientUpstreamError - Network failure, 5xx, or rate limit (retry)
    PollingTimeoutError - Polling exhausted without a terminal status
    PartialCleanupError - One or more cleanup targets could not be deleted
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
    ValidationError,
)

if TYPE_CHECKING:
    from typing import Any


# =============================================================================
# Upload & Merge
# =============================================================================


class SessionExpiredError(ValidationError):
    """
    Raised when a chunk arrives for a session that has expired.

    The session's partial chunks are deleted before this is raised. The
    client has to start a new upload; retrying the same chunk will not help.
    """

    default_error_code: str = "SESSION_EXPIRED"


class MergeIntegrityError(ValidationError):
    """Raised when the merged artifact size differs from the sum of chunk sizes."""

    default_error_code: str = "MERGE_INTEGRITY_FAILED"


class MergeInProgressError(ConflictError):
    """Raised when a merge is requested while another caller is merging."""

    default_error_code: str = "MERGE_IN_PROGRESS"


# =============================================================================
# Credentials
# =============================================================================


class ReconnectRequiredError(BaseApplicationError):
    """
    Raised when the user must re-authorize the platform connection.

    Covers a missing credential, a refresh token past its lifetime, and a
    refresh token the platform rejected. Never retried automatically.
    """

    default_error_code: str = "RECONNECT_REQUIRED"


# =============================================================================
# Platform API
# =============================================================================


class PlatformError(ExternalServiceError):
    """
    Base exception for platform API failures.

    Attributes:
        platform_code: Error code from the platform's error body, if any
        status_code: HTTP status, if a response was received
        is_retryable: Whether a retry can reasonably succeed
    """

    default_error_code: str = "PLATFORM_ERROR"
    is_retryable: bool = False

    def __init__(
        self,
        message: str,
        platform_code: str | None = None,
        status_code: int | None = None,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = dict(details or {})
        if platform_code:
            details["platform_code"] = platform_code
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(message, error_code=error_code, details=details)
        self.platform_code = platform_code
        self.status_code = status_code


class PlatformRequestError(PlatformError):
    """Platform rejected the request (bad parameters, URL not reachable, etc.)."""

    default_error_code: str = "PLATFORM_REQUEST_REJECTED"


class InvalidGrantError(PlatformError):
    """Platform rejected the credential (invalid, expired or revoked token)."""

    default_error_code: str = "PLATFORM_INVALID_GRANT"


class TransientUpstreamError(PlatformError):
    """Network failure, timeout, rate limit or 5xx from the platform."""

    default_error_code: str = "PLATFORM_UNAVAILABLE"
    is_retryable: bool = True


class UpstreamSubmissionError(PlatformRequestError):
    """Platform rejected a publish request (init call, not a status query)."""

    default_error_code: str = "UPSTREAM_SUBMISSION_FAILED"


# =============================================================================
# Polling & Cleanup
# =============================================================================


class PollingTimeoutError(BaseApplicationError, TimeoutError):
    """
    Raised when a publish job did not reach a terminal state in time.

    The persisted job is left exactly as it was; the reconciliation sweep
    resumes polling later.
    """

    default_error_code: str = "PUBLISH_STATUS_TIMEOUT"


class PartialCleanupError(BaseApplicationError):
    """
    One or more staged files could not be deleted.

    Logged and reported in the cleanup result; never raised to fail an
    otherwise successful publish.
    """

    default_error_code: str = "PARTIAL_CLEANUP"
