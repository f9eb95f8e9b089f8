"""
Standardized API Response Module

Provides consistent response formatting across all API endpoints.

RESPONSE FORMAT:
    Success:
        {
            "data": <response data>,
            "status": "success"
        }

    Paginated success adds:
        "pagination": {"page": 1, "limit": 10, "total": 42, "totalPages": 5}

    Error:
        {
            "error": "Human-readable message",
            "code": "ERROR_CODE",
            "details": {...}  # Optional extra context
        }
"""

import math
from typing import Any, Optional


# ============================================================================
# COMMON ERROR CODES
# ============================================================================

class ErrorCodes:
    """Standard error codes for API responses."""

    # Authentication errors (401)
    AUTHENTICATION_REQUIRED = "AUTHENTICATION_REQUIRED"

    # Authorization errors (403)
    AUTHORIZATION_DENIED = "AUTHORIZATION_DENIED"

    # Not found errors (404)
    NOT_FOUND = "NOT_FOUND"

    # Validation errors (400)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_TRANSITION = "INVALID_TRANSITION"

    # Conflict errors (409)
    CONFLICT = "CONFLICT"
    ALREADY_EXISTS = "ALREADY_EXISTS"

    # Business rule errors (422)
    BUSINESS_RULE = "BUSINESS_RULE"

    # Server errors (500)
    INTERNAL_ERROR = "INTERNAL_ERROR"


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def success_response(data: Any) -> dict:
    """
    Create a standardized success response dict.
    """
    return {"data": data, "status": "success"}


def paginated_response(data: list, page: int, limit: int, total: int) -> dict:
    response = success_response(data)
    response["pagination"] = {
        "page": page,
        "limit": limit,
        "total": total,
        "totalPages": math.ceil(total / limit) if limit else 0,
    }
    return response


def error_response(
    code: str,
    message: str,
    details: Optional[dict] = None,
) -> dict:
    """
    Create a standardized error response dict.
    """
    response = {"error": message, "code": code}
    if details:
        response["details"] = details
    return response
