"""
Multi-tenancy package.

Modules:
    context: tenant resolution from the X-Tenant-Id header
    queries: tenant-scoped query helpers
"""

from .context import (
    FALLBACK_TENANT_ID,
    TENANT_HEADER,
    get_tenant_id,
    resolve_tenant_id,
)

from .queries import (
    scoped_select,
    tenant_filter,
    require_owned,
    get_services_by_ids,
    list_active_barbers,
)

__all__ = [
    # Context
    "FALLBACK_TENANT_ID",
    "TENANT_HEADER",
    "get_tenant_id",
    "resolve_tenant_id",
    # Query helpers
    "scoped_select",
    "tenant_filter",
    "require_owned",
    "get_services_by_ids",
    "list_active_barbers",
]
