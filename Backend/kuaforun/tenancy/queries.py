"""
Tenant-scoped query helpers.

ALL queries for tenant data MUST use these helpers or include an explicit
``tenant_id`` filter. Rows of another tenant are indistinguishable from
missing rows.

Usage:
    from kuaforun.tenancy.queries import scoped_select, require_owned

    stmt = scoped_select(Shop, tenant_id).where(Shop.name.ilike("%fade%"))
    shop = await require_owned(session, Shop, shop_id, tenant_id)
"""

import uuid
from typing import Optional, Sequence, Type, TypeVar

from sqlalchemy import Select, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import DeclarativeBase

from ..models import Service, Staff, StaffRole

T = TypeVar("T", bound=DeclarativeBase)


# ────────────────────────────────────────────────────────────────
# Composable Query Helpers
# ────────────────────────────────────────────────────────────────

def scoped_select(model: Type[T], tenant_id: str) -> Select:
    """
    Create a SELECT statement pre-filtered by tenant_id.

    Usage:
        stmt = scoped_select(Booking, tenant_id).where(Booking.shop_id == shop_id)
    """
    return select(model).where(model.tenant_id == tenant_id)


def tenant_filter(model: Type[T], tenant_id: str):
    """Return a SQLAlchemy filter clause for tenant_id."""
    return model.tenant_id == tenant_id


async def require_owned(
    session: AsyncSession,
    model: Type[T],
    entity_id: uuid.UUID,
    tenant_id: str,
    for_update: bool = False,
) -> Optional[T]:
    """
    Fetch an entity by ID, validating tenant ownership.
    Returns None if not found or owned by another tenant.

    ``for_update`` takes a row lock for the rest of the transaction.
    """
    stmt = scoped_select(model, tenant_id).where(model.id == entity_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


# ────────────────────────────────────────────────────────────────
# Service / Staff Queries
# ────────────────────────────────────────────────────────────────

async def get_services_by_ids(
    session: AsyncSession,
    tenant_id: str,
    shop_id: uuid.UUID,
    service_ids: Sequence[uuid.UUID],
) -> Sequence[Service]:
    """Active services of one shop among the given ids."""
    if not service_ids:
        return []
    result = await session.execute(
        scoped_select(Service, tenant_id).where(
            Service.shop_id == shop_id,
            Service.id.in_(service_ids),
            Service.is_active.is_(True),
        )
    )
    return result.scalars().all()


async def list_active_barbers(
    session: AsyncSession,
    tenant_id: str,
    shop_id: uuid.UUID,
) -> Sequence[Staff]:
    result = await session.execute(
        scoped_select(Staff, tenant_id)
        .where(
            Staff.shop_id == shop_id,
            Staff.role == StaffRole.BARBER,
            Staff.is_active.is_(True),
        )
        .order_by(Staff.created_at)
    )
    return result.scalars().all()
