"""
Multi-tenancy context module.

Every row in the system carries a ``tenant_id``. The tenant for a request is
taken from the ``X-Tenant-Id`` header that the gateway forwards; when the
header is missing the configured default tenant applies.

Proxies sometimes fold repeated headers into one comma separated value
("a, b"), so only the first non-empty token is used.
"""

import logging
from typing import Mapping, Optional

from fastapi import Depends, Header

from ..core.config import Settings, get_app_settings


logger = logging.getLogger(__name__)

TENANT_HEADER = "X-Tenant-Id"
FALLBACK_TENANT_ID = "kuaforun"


def _first_token(raw: Optional[str]) -> Optional[str]:
    if raw is None:
        return None
    for token in raw.split(","):
        token = token.strip()
        if token:
            return token
    return None


def resolve_tenant_id(headers: Mapping[str, str], default: Optional[str] = None) -> str:
    """
    Resolve the tenant identifier from request headers.

    Lookup is case-insensitive on the header name. Pure and deterministic.

    Args:
        headers: Request headers (any mapping; Starlette Headers already ignore case)
        default: Fallback tenant; ``"kuaforun"`` when empty

    Returns:
        Tenant id string, never empty
    """
    raw = None
    for key, value in headers.items():
        if key.lower() == TENANT_HEADER.lower():
            raw = value
            break
    tenant = _first_token(raw)
    if tenant:
        return tenant
    return (default or "").strip() or FALLBACK_TENANT_ID


async def get_tenant_id(
    x_tenant_id: Optional[str] = Header(None, alias=TENANT_HEADER),
    settings: Settings = Depends(get_app_settings),
) -> str:
    """FastAPI dependency for routes that read or write tenant data."""
    headers = {TENANT_HEADER: x_tenant_id} if x_tenant_id is not None else {}
    tenant_id = resolve_tenant_id(headers, settings.default_tenant_id)
    logger.debug(f"Resolved tenant: {tenant_id}")
    return tenant_id
