"""
Custom exception classes and error handling.

Two families live here:
- APIException and subclasses: consistent HTTP error responses for routers.
- StravaSyncError and subclasses: domain errors raised by the credential
  manager, the request scheduler, the sync engine and the storage layer.
  Batch callers catch these per activity / per user and count them.
"""
from fastapi import HTTPException, status
from typing import Optional, Dict, Any


class APIException(HTTPException):
    """Base API exception with consistent structure."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code


class NotFoundError(APIException):
    """Resource not found."""

    def __init__(self, resource: str, identifier: str):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{resource} not found: {identifier}",
            error_code="NOT_FOUND"
        )


class ValidationError(APIException):
    """Validation error."""

    def __init__(self, detail: str, field: Optional[str] = None):
        error_code = f"VALIDATION_ERROR_{field.upper()}" if field else "VALIDATION_ERROR"
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=detail,
            error_code=error_code
        )


class ServiceUnavailableError(APIException):
    """Upstream provider or credential problem surfaced to an API caller."""

    def __init__(self, detail: str):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=detail,
            error_code="SERVICE_UNAVAILABLE"
        )


# --- Domain errors ---------------------------------------------------------


class StravaSyncError(Exception):
    """Base class for errors raised while talking to Strava or persisting results."""


class CredentialNotFound(StravaSyncError):
    def __init__(self, user_id: str):
        super().__init__(f"No Strava credential stored for user {user_id}")
        self.user_id = user_id


class RefreshFailed(StravaSyncError):
    def __init__(self, user_id: str, reason: str):
        super().__init__(f"Strava token refresh failed for user {user_id}: {reason}")
        self.user_id = user_id
        self.reason = reason


class RateLimitExceeded(StravaSyncError):
    """Strava answered 429. The scheduler self-throttles, so this should be rare."""

    def __init__(self, message: str, *, retry_after_s: int = 900):
        super().__init__(message)
        self.retry_after_s = int(retry_after_s)


class UpstreamHTTPError(StravaSyncError):
    def __init__(self, status_code: int, message: str = ""):
        super().__init__(f"Strava HTTP {status_code}: {message}".rstrip(": "))
        self.status_code = int(status_code)

    @property
    def retryable(self) -> bool:
        # 0 = network error. 4xx (other than 429, raised as RateLimitExceeded)
        # will not change on retry.
        return self.status_code == 0 or self.status_code >= 500


class NotSupportedActivityKind(StravaSyncError):
    """Skip signal: the activity kind is not scored. Not counted as an error."""

    def __init__(self, activity_id: int, kind: Optional[str]):
        super().__init__(f"Activity {activity_id} has unsupported kind {kind!r}")
        self.activity_id = activity_id
        self.kind = kind


class PersistenceError(StravaSyncError):
    def __init__(self, operation: str, cause: Exception):
        super().__init__(f"{operation} failed: {cause}")
        self.operation = operation
        self.cause = cause
