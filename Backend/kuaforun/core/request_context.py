"""
Request Context Resolution Module

Identity is established upstream by the auth gateway, which forwards it as
plain headers:

    X-User-Id    caller's user id (UUID)
    X-User-Role  one of UserRole

This module turns those headers into a RequestContext. Role strings are
validated here once; nothing downstream compares raw strings.
"""

import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from fastapi import Depends, Header

from .errors import AuthError, ForbiddenError, ValidationError

logger = logging.getLogger(__name__)


class UserRole(str, Enum):
    ADMIN = "admin"
    SUPERVISOR = "supervisor"
    BARBER = "barber"
    CUSTOMER = "customer"
    MANAGER = "manager"
    OWNER = "owner"


# Roles that see replies regardless of moderation state
STAFF_ROLES = frozenset({UserRole.BARBER, UserRole.MANAGER, UserRole.OWNER})
MODERATOR_ROLES = frozenset({UserRole.MANAGER, UserRole.OWNER})
PRIVILEGED_ROLES = frozenset({UserRole.ADMIN, UserRole.SUPERVISOR})


@dataclass(frozen=True)
class RequestContext:
    """Who is making the request. Both fields are None for anonymous callers."""
    user_id: Optional[uuid.UUID] = None
    role: Optional[UserRole] = None

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None


def parse_role(raw: Optional[str]) -> Optional[UserRole]:
    if raw is None or not raw.strip():
        return None
    try:
        return UserRole(raw.strip().lower())
    except ValueError:
        raise ValidationError(
            f"Unknown role: {raw}",
            {"role": [f"must be one of {', '.join(r.value for r in UserRole)}"]},
        )


def parse_user_id(raw: Optional[str]) -> Optional[uuid.UUID]:
    if raw is None or not raw.strip():
        return None
    try:
        return uuid.UUID(raw.strip())
    except ValueError:
        logger.warning(f"Rejected malformed X-User-Id: {raw!r}")
        raise AuthError("Invalid user identity")


async def get_request_context(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    x_user_role: Optional[str] = Header(None, alias="X-User-Role"),
) -> RequestContext:
    """FastAPI dependency: resolve the caller, anonymous allowed."""
    return RequestContext(user_id=parse_user_id(x_user_id), role=parse_role(x_user_role))


async def require_user(ctx: RequestContext = Depends(get_request_context)) -> RequestContext:
    """FastAPI dependency: resolve the caller, 401 when anonymous."""
    if not ctx.is_authenticated:
        raise AuthError("Authentication required")
    return ctx


def require_role(ctx: RequestContext, roles, message: str = "Insufficient role") -> None:
    if ctx.role not in roles:
        raise ForbiddenError(message, {"role": ctx.role.value if ctx.role else None})
