"""
Application error taxonomy.

Every error raised from the service layer derives from AppError. The HTTP
layer maps each class to a status code and renders:

    {"error": "<message>", "code": "<ERROR_CODE>", "details": {...}}

``details`` is omitted when empty.
"""

from typing import Any, Optional
from uuid import UUID

from .responses import ErrorCodes


class AppError(Exception):
    status_code: int = 500
    code: str = ErrorCodes.INTERNAL_ERROR

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details
        super().__init__(message)


class ValidationError(AppError):
    """Malformed input or a broken precondition on the request itself."""
    status_code = 400
    code = ErrorCodes.VALIDATION_ERROR


class InvalidTransitionError(ValidationError):
    code = ErrorCodes.INVALID_TRANSITION


class AuthError(AppError):
    """Caller identity could not be resolved."""
    status_code = 401
    code = ErrorCodes.AUTHENTICATION_REQUIRED


class ForbiddenError(AppError):
    status_code = 403
    code = ErrorCodes.AUTHORIZATION_DENIED


class NotFoundError(AppError):
    status_code = 404
    code = ErrorCodes.NOT_FOUND


class ConflictError(AppError):
    """A booking overlaps an existing non-cancelled booking."""
    status_code = 409
    code = ErrorCodes.CONFLICT

    def __init__(self, message: str, conflicting_id: Optional[UUID] = None):
        self.conflicting_id = conflicting_id
        details = {"conflictingId": str(conflicting_id)} if conflicting_id else None
        super().__init__(message, details)


class DuplicateError(AppError):
    status_code = 409
    code = ErrorCodes.ALREADY_EXISTS


class BusinessRuleError(AppError):
    """Well-formed request that violates a scheduling rule."""
    status_code = 422
    code = ErrorCodes.BUSINESS_RULE


class InternalError(AppError):
    status_code = 500
    code = ErrorCodes.INTERNAL_ERROR
