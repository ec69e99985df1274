"""Shared error models and exceptions for the role lifecycle engine"""

from enum import Enum
from typing import Optional, Dict, Any
from pydantic import BaseModel, ConfigDict


class ErrorCode(str, Enum):
    """Standard error codes for engine and API responses"""

    # Client errors (4xx)
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    VALIDATION_ERROR = "validation_error"

    # Lifecycle-specific errors
    LAST_ADMIN = "last_admin"
    NOT_TEMPORARY = "not_temporary"
    INVALID_EXPIRATION = "invalid_expiration"
    NOTIFICATION_FAILED = "notification_failed"

    # Server errors (5xx)
    INTERNAL_ERROR = "internal_error"
    SERVICE_UNAVAILABLE = "service_unavailable"


class ErrorDetail(BaseModel):
    """Structured error detail for API responses and bulk result entries"""

    model_config = ConfigDict(use_enum_values=True)

    code: ErrorCode
    message: str
    detail: Optional[str] = None
    field: Optional[str] = None  # For validation errors
    metadata: Optional[Dict[str, Any]] = None


class RoleLifecycleError(Exception):
    """Base class for every error raised by the role lifecycle engine."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    status_code: int = 500

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.field = field
        self.metadata = metadata

    def to_error_detail(self) -> ErrorDetail:
        return ErrorDetail(
            code=self.code,
            message=self.message,
            field=self.field,
            metadata=self.metadata,
        )


class ValidationError(RoleLifecycleError):
    """Bad input. Never retried."""

    code = ErrorCode.VALIDATION_ERROR
    status_code = 400


class NotFoundError(RoleLifecycleError):
    """The grant does not exist. Callers may treat this as a no-op."""

    code = ErrorCode.NOT_FOUND
    status_code = 404


class LastAdminError(RoleLifecycleError):
    """
    Refusal to remove the last admin grant in the system.

    This is a deliberate safety refusal, not a failure, and is never retried.
    """

    code = ErrorCode.LAST_ADMIN
    status_code = 409


class NotTemporaryError(RoleLifecycleError):
    """Extend was called on a permanent grant."""

    code = ErrorCode.NOT_TEMPORARY
    status_code = 400


class InvalidExpirationError(RoleLifecycleError):
    """The new expiration is not strictly later than the current one."""

    code = ErrorCode.INVALID_EXPIRATION
    status_code = 400


class ConcurrentModificationError(RoleLifecycleError):
    """A compare-and-set write lost a race with another writer."""

    code = ErrorCode.CONFLICT
    status_code = 409


class NotificationDeliveryError(RoleLifecycleError):
    """A notification could not be delivered. Never rolls back a mutation."""

    code = ErrorCode.NOTIFICATION_FAILED
    status_code = 502


class StoreUnavailableError(RoleLifecycleError):
    """Infrastructure failure; the mutation had no effect."""

    code = ErrorCode.SERVICE_UNAVAILABLE
    status_code = 503


def create_error_response(
    code: ErrorCode,
    message: str,
    detail: Optional[str] = None,
    status_code: int = 500,
    metadata: Optional[Dict[str, Any]] = None
) -> dict:
    """
    Create a standardized error response dictionary.

    Args:
        code: Error code from ErrorCode enum
        message: User-friendly error message
        detail: Optional technical detail for debugging
        status_code: HTTP status code
        metadata: Optional additional error context

    Returns:
        Dictionary suitable for HTTPException detail
    """
    error = ErrorDetail(
        code=code,
        message=message,
        detail=detail,
        metadata=metadata
    )

    return {
        "error": error.model_dump(exclude_none=True),
        "status_code": status_code
    }


def error_response_for(error: RoleLifecycleError) -> dict:
    """Build the standardized error response for an engine exception."""
    return create_error_response(
        code=error.code,
        message=error.message,
        status_code=error.status_code,
        metadata=error.metadata,
    )
