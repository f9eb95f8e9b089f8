"""
Shop service catalogue routes.

    GET    /services?shopId=...   -> services, optionally of one shop
    GET    /services/{service_id}
    POST   /services              -> create (shop admin)
    PATCH  /services/{service_id} -> name, price, duration, active flag
    DELETE /services/{service_id}

A service that already appears on bookings is deactivated instead of being
deleted, so booked service lists stay intact.
"""

import logging
import uuid
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .core.db import get_session
from .core.errors import NotFoundError, ValidationError
from .core.request_context import RequestContext, require_user
from .core.responses import success_response
from .models import BookingServiceItem, Service
from .shops import ensure_shop_admin, get_shop_or_404
from .tenancy import get_tenant_id, require_owned, scoped_select

logger = logging.getLogger(__name__)


class ServiceCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    shop_id: uuid.UUID = Field(..., validation_alias=AliasChoices("barberShopId", "shopId", "shop_id"))
    name: str = Field(..., min_length=1, max_length=255)
    price: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    duration_minutes: int = Field(..., alias="durationMinutes", gt=0)
    is_active: bool = Field(True, alias="isActive")


class ServiceUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    price: Optional[Decimal] = Field(None, ge=0, max_digits=10, decimal_places=2)
    duration_minutes: Optional[int] = Field(None, alias="durationMinutes", gt=0)
    is_active: Optional[bool] = Field(None, alias="isActive")


def service_to_dict(service: Service) -> dict:
    return {
        "id": str(service.id),
        "shopId": str(service.shop_id),
        "name": service.name,
        "price": float(service.price),
        "durationMinutes": service.duration_minutes,
        "isActive": service.is_active,
        "createdAt": service.created_at.isoformat() if service.created_at else None,
    }


async def get_service_or_404(session: AsyncSession, service_id: uuid.UUID, tenant_id: str) -> Service:
    service = await require_owned(session, Service, service_id, tenant_id)
    if not service:
        raise NotFoundError("Service not found", {"serviceId": str(service_id)})
    return service


# ────────────────────────────────────────────────────────────────
# Router
# ────────────────────────────────────────────────────────────────

router = APIRouter(prefix="/services", tags=["services"])


@router.get("")
async def list_services(
    shop_id: Optional[uuid.UUID] = Query(None, alias="shopId"),
    active: Optional[bool] = Query(None),
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    stmt = scoped_select(Service, tenant_id)
    if shop_id:
        stmt = stmt.where(Service.shop_id == shop_id)
    if active is not None:
        stmt = stmt.where(Service.is_active.is_(active))
    result = await session.execute(stmt.order_by(Service.created_at, Service.name))
    return success_response([service_to_dict(s) for s in result.scalars().all()])


@router.get("/{service_id}")
async def get_service(
    service_id: uuid.UUID,
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    service = await get_service_or_404(session, service_id, tenant_id)
    return success_response(service_to_dict(service))


@router.post("", status_code=201)
async def create_service(
    payload: ServiceCreateRequest,
    ctx: RequestContext = Depends(require_user),
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    await get_shop_or_404(session, payload.shop_id, tenant_id)
    await ensure_shop_admin(session, ctx, payload.shop_id, tenant_id)

    service = Service(
        tenant_id=tenant_id,
        shop_id=payload.shop_id,
        name=payload.name,
        price=payload.price,
        duration_minutes=payload.duration_minutes,
        is_active=payload.is_active,
    )
    session.add(service)
    await session.commit()
    logger.info(f"Created service {service.id} '{service.name}' on shop {service.shop_id}")
    return success_response(service_to_dict(service))


@router.patch("/{service_id}")
async def update_service(
    service_id: uuid.UUID,
    payload: ServiceUpdateRequest,
    ctx: RequestContext = Depends(require_user),
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    service = await get_service_or_404(session, service_id, tenant_id)
    await ensure_shop_admin(session, ctx, service.shop_id, tenant_id)

    changes = payload.model_dump(exclude_unset=True)
    for field in ("name", "price", "duration_minutes", "is_active"):
        if field in changes and changes[field] is None:
            raise ValidationError(f"{field} cannot be cleared", {field: ["must not be null"]})
    for field, value in changes.items():
        setattr(service, field, value)
    await session.commit()
    return success_response(service_to_dict(service))


@router.delete("/{service_id}")
async def delete_service(
    service_id: uuid.UUID,
    ctx: RequestContext = Depends(require_user),
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    service = await get_service_or_404(session, service_id, tenant_id)
    await ensure_shop_admin(session, ctx, service.shop_id, tenant_id)

    booked = await session.scalar(
        select(func.count())
        .select_from(BookingServiceItem)
        .where(BookingServiceItem.service_id == service.id, BookingServiceItem.tenant_id == tenant_id)
    )
    if booked:
        service.is_active = False
        await session.commit()
        logger.info(f"Service {service_id} is on {booked} booking(s); deactivated instead of deleted")
        return success_response({"ok": True, "deactivated": True})

    await session.delete(service)
    await session.commit()
    logger.info(f"Deleted service {service_id} tenant={tenant_id}")
    return success_response({"ok": True, "deactivated": False})
