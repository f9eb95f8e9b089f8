"""
Core module - configuration, database, errors, request context, and response formatting.
"""
from .config import Settings, get_app_settings, get_settings
from .db import Base, build_engine, build_sessionmaker, create_all, get_session
from .errors import (
    AppError,
    AuthError,
    BusinessRuleError,
    ConflictError,
    DuplicateError,
    ForbiddenError,
    InternalError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from .request_context import (
    MODERATOR_ROLES,
    PRIVILEGED_ROLES,
    STAFF_ROLES,
    RequestContext,
    UserRole,
    get_request_context,
    require_role,
    require_user,
)
from .responses import (
    ErrorCodes,
    error_response,
    paginated_response,
    success_response,
)

__all__ = [
    # Config
    "Settings",
    "get_app_settings",
    "get_settings",
    # Database
    "Base",
    "build_engine",
    "build_sessionmaker",
    "create_all",
    "get_session",
    # Errors
    "AppError",
    "AuthError",
    "BusinessRuleError",
    "ConflictError",
    "DuplicateError",
    "ForbiddenError",
    "InternalError",
    "InvalidTransitionError",
    "NotFoundError",
    "ValidationError",
    # Request Context
    "MODERATOR_ROLES",
    "PRIVILEGED_ROLES",
    "STAFF_ROLES",
    "RequestContext",
    "UserRole",
    "get_request_context",
    "require_role",
    "require_user",
    # Responses
    "ErrorCodes",
    "error_response",
    "paginated_response",
    "success_response",
]
