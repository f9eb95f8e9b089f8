"""
Shop directory routes.

Tenant-scoped access to shops, their staff and their working hours. Reads
are open to any caller of the tenant; writes need an owner or manager of the
shop, or an admin/supervisor.

    GET    /shops                            -> paginated search (gender, name, city)
    POST   /shops                            -> create (admin, supervisor, owner)
    GET    /shops/{shop_id}                  -> single shop
    PATCH  /shops/{shop_id}                  -> partial update
    DELETE /shops/{shop_id}                  -> delete (admin, supervisor)
    GET    /shops/{shop_id}/hours            -> normalized working hours, ?day=0..6
    POST   /shops/{shop_id}/hours            -> add an opening period
    PATCH  /shops/{shop_id}/hours/{hour_id}  -> change an opening period
    DELETE /shops/{shop_id}/hours/{hour_id}
    GET    /shops/{shop_id}/staff            -> staff members
    POST   /shops/{shop_id}/staff            -> add a staff member
    GET    /shops/{shop_id}/staff/{staff_id}
    PATCH  /shops/{shop_id}/staff/{staff_id} -> role / active flag
    DELETE /shops/{shop_id}/staff/{staff_id}
"""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from .core.config import Settings, get_app_settings
from .core.db import get_session
from .core.errors import AuthError, DuplicateError, ForbiddenError, NotFoundError, ValidationError
from .core.request_context import PRIVILEGED_ROLES, RequestContext, UserRole, require_role, require_user
from .core.responses import paginated_response, success_response
from .models import Shop, ShopGender, ShopHours, Staff, StaffRole
from .scheduling import HHMM_PATTERN, MINUTES_PER_DAY, OpeningPeriod, from_minutes, to_minutes
from .tenancy import get_tenant_id, require_owned, scoped_select

logger = logging.getLogger(__name__)

# Staff roles that may change a shop, its hours and its staff
SHOP_ADMIN_STAFF_ROLES = frozenset({StaffRole.OWNER, StaffRole.MANAGER})
SHOP_CREATOR_ROLES = PRIVILEGED_ROLES | {UserRole.OWNER}
BOOTSTRAP_ROLES = frozenset({UserRole.OWNER, UserRole.MANAGER})

LAST_MINUTE = MINUTES_PER_DAY - 1


# ────────────────────────────────────────────────────────────────
# Router Definition
# ────────────────────────────────────────────────────────────────

router = APIRouter(prefix="/shops", tags=["shops"])


# ────────────────────────────────────────────────────────────────
# Request Models
# ────────────────────────────────────────────────────────────────

class ShopCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=255)
    address: str = Field(..., min_length=1)
    formatted_address: Optional[str] = Field(None, alias="formattedAddress")
    phone: str = Field(..., min_length=3, max_length=50)
    gender: ShopGender = ShopGender.UNISEX
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    owner_user_id: Optional[uuid.UUID] = Field(None, alias="ownerUserId")


class ShopUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    address: Optional[str] = Field(None, min_length=1)
    formatted_address: Optional[str] = Field(None, alias="formattedAddress")
    phone: Optional[str] = Field(None, min_length=3, max_length=50)
    gender: Optional[ShopGender] = None
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)


class HoursCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    weekday: int = Field(..., ge=0, le=6)
    open: Optional[str] = Field(None, pattern=HHMM_PATTERN)
    close: Optional[str] = Field(None, pattern=HHMM_PATTERN)
    open_minutes: Optional[int] = Field(None, alias="openMinutes", ge=0, lt=MINUTES_PER_DAY)
    close_minutes: Optional[int] = Field(None, alias="closeMinutes", ge=0, lt=MINUTES_PER_DAY)
    open_24h: bool = Field(False, alias="open24h")


class HoursUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    weekday: Optional[int] = Field(None, ge=0, le=6)
    open: Optional[str] = Field(None, pattern=HHMM_PATTERN)
    close: Optional[str] = Field(None, pattern=HHMM_PATTERN)
    open_minutes: Optional[int] = Field(None, alias="openMinutes", ge=0, lt=MINUTES_PER_DAY)
    close_minutes: Optional[int] = Field(None, alias="closeMinutes", ge=0, lt=MINUTES_PER_DAY)
    open_24h: Optional[bool] = Field(None, alias="open24h")


class StaffCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: uuid.UUID = Field(..., alias="userId")
    role: StaffRole = StaffRole.BARBER
    is_active: bool = Field(True, alias="isActive")


class StaffUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    role: Optional[StaffRole] = None
    is_active: Optional[bool] = Field(None, alias="isActive")


# ────────────────────────────────────────────────────────────────
# Serializers
# ────────────────────────────────────────────────────────────────

def shop_to_dict(shop: Shop) -> dict:
    return {
        "id": str(shop.id),
        "name": shop.name,
        "address": shop.address,
        "formattedAddress": shop.formatted_address,
        "phone": shop.phone,
        "gender": shop.gender.value,
        "latitude": shop.latitude,
        "longitude": shop.longitude,
        "tenantId": shop.tenant_id,
        "createdAt": shop.created_at.isoformat() if shop.created_at else None,
    }


def staff_to_dict(staff: Staff) -> dict:
    return {
        "id": str(staff.id),
        "shopId": str(staff.shop_id),
        "userId": str(staff.user_id),
        "role": staff.role.value,
        "isActive": staff.is_active,
    }


def hours_to_dict(hours: ShopHours) -> dict:
    return {
        "id": str(hours.id),
        "weekday": hours.weekday,
        "openMinutes": hours.open_minutes,
        "closeMinutes": hours.close_minutes,
        "open24h": bool(hours.open_24h),
        "open": "00:00" if hours.open_24h else from_minutes(hours.open_minutes),
        "close": "23:59" if hours.open_24h else from_minutes(hours.close_minutes),
    }


def default_hours_entry(weekday: int, settings: Settings) -> dict:
    open_min = to_minutes(settings.default_open_time)
    close_min = to_minutes(settings.default_close_time)
    return {
        "weekday": weekday,
        "openMinutes": open_min,
        "closeMinutes": close_min,
        "open24h": False,
        "open": from_minutes(open_min),
        "close": from_minutes(close_min),
    }


# ────────────────────────────────────────────────────────────────
# Queries shared with bookings
# ────────────────────────────────────────────────────────────────

async def get_shop_or_404(session: AsyncSession, shop_id: uuid.UUID, tenant_id: str) -> Shop:
    shop = await require_owned(session, Shop, shop_id, tenant_id)
    if not shop:
        raise NotFoundError("Shop not found", {"shopId": str(shop_id)})
    return shop


async def load_opening_periods(
    session: AsyncSession,
    shop_id: uuid.UUID,
    weekday: int,
    settings: Settings,
) -> list[OpeningPeriod]:
    """Opening periods for one weekday, or the default window when none are stored."""
    result = await session.execute(
        select(ShopHours).where(ShopHours.shop_id == shop_id, ShopHours.weekday == weekday)
    )
    rows = result.scalars().all()
    if not rows:
        return [
            OpeningPeriod(
                open_minutes=to_minutes(settings.default_open_time),
                close_minutes=to_minutes(settings.default_close_time),
            )
        ]
    return [
        OpeningPeriod(open_minutes=r.open_minutes, close_minutes=r.close_minutes, open_24h=bool(r.open_24h))
        for r in rows
    ]


# ────────────────────────────────────────────────────────────────
# Shop administration
# ────────────────────────────────────────────────────────────────

async def has_shop_admins(session: AsyncSession, tenant_id: str, shop_id: uuid.UUID) -> bool:
    result = await session.execute(
        scoped_select(Staff, tenant_id)
        .where(Staff.shop_id == shop_id, Staff.role.in_(SHOP_ADMIN_STAFF_ROLES))
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def ensure_shop_admin(
    session: AsyncSession, ctx: RequestContext, shop_id: uuid.UUID, tenant_id: str
) -> None:
    """
    Allow admins and supervisors, or an active owner/manager of this shop.

    Raises AuthError for anonymous callers and ForbiddenError otherwise.
    """
    if not ctx.is_authenticated:
        raise AuthError("Authentication required")
    if ctx.role in PRIVILEGED_ROLES:
        return
    result = await session.execute(
        scoped_select(Staff, tenant_id)
        .where(
            Staff.shop_id == shop_id,
            Staff.user_id == ctx.user_id,
            Staff.is_active.is_(True),
            Staff.role.in_(SHOP_ADMIN_STAFF_ROLES),
        )
        .limit(1)
    )
    if result.scalar_one_or_none() is None:
        raise ForbiddenError("Only the shop's owner or manager can do this", {"shopId": str(shop_id)})


def resolve_period(
    open_24h: bool,
    open_minutes: Optional[int],
    close_minutes: Optional[int],
    open_hhmm: Optional[str] = None,
    close_hhmm: Optional[str] = None,
) -> tuple[int, int]:
    """
    Turn an hours payload into (open, close) minutes.

    Explicit minutes win over HH:MM strings. 24h periods are stored as
    00:00-23:59.
    """
    if open_24h:
        return 0, LAST_MINUTE
    open_min = open_minutes if open_minutes is not None else (to_minutes(open_hhmm) if open_hhmm else None)
    close_min = close_minutes if close_minutes is not None else (to_minutes(close_hhmm) if close_hhmm else None)
    if open_min is None or close_min is None:
        raise ValidationError("Opening and closing times are required", {"open": ["required"], "close": ["required"]})
    if open_min >= close_min:
        raise ValidationError(
            "Opening time must be before closing time",
            {"open": [from_minutes(open_min)], "close": [from_minutes(close_min)]},
        )
    return open_min, close_min


async def _get_hours_or_404(session: AsyncSession, shop_id: uuid.UUID, hour_id: uuid.UUID) -> ShopHours:
    hours = await session.get(ShopHours, hour_id)
    if hours is None or hours.shop_id != shop_id:
        raise NotFoundError("Working hours not found", {"hourId": str(hour_id)})
    return hours


async def _ensure_period_free(
    session: AsyncSession,
    shop_id: uuid.UUID,
    weekday: int,
    open_min: int,
    close_min: int,
    exclude_id: Optional[uuid.UUID] = None,
) -> None:
    stmt = select(ShopHours).where(
        ShopHours.shop_id == shop_id,
        ShopHours.weekday == weekday,
        ShopHours.open_minutes == open_min,
        ShopHours.close_minutes == close_min,
    )
    if exclude_id is not None:
        stmt = stmt.where(ShopHours.id != exclude_id)
    existing = (await session.execute(stmt.limit(1))).scalar_one_or_none()
    if existing is not None:
        raise DuplicateError("This opening period already exists", {"hourId": str(existing.id)})


async def _get_staff_in_shop(
    session: AsyncSession, tenant_id: str, shop_id: uuid.UUID, staff_id: uuid.UUID
) -> Staff:
    staff = await require_owned(session, Staff, staff_id, tenant_id)
    if not staff:
        raise NotFoundError("Staff member not found", {"staffId": str(staff_id)})
    if staff.shop_id != shop_id:
        raise ValidationError("Staff member does not belong to this shop", {"staffId": str(staff_id)})
    return staff


# ────────────────────────────────────────────────────────────────
# Shop Endpoints
# ────────────────────────────────────────────────────────────────

@router.get("")
async def list_shops(
    gender: Optional[ShopGender] = Query(None),
    name: Optional[str] = Query(None),
    city: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    stmt = scoped_select(Shop, tenant_id)
    if gender:
        stmt = stmt.where(Shop.gender == gender)
    if name:
        stmt = stmt.where(Shop.name.ilike(f"%{name}%"))
    if city:
        stmt = stmt.where(
            or_(Shop.address.ilike(f"%{city}%"), Shop.formatted_address.ilike(f"%{city}%"))
        )

    total = (await session.execute(select(func.count()).select_from(stmt.subquery()))).scalar_one()
    result = await session.execute(
        stmt.order_by(Shop.created_at, Shop.name).offset((page - 1) * limit).limit(limit)
    )
    shops = result.scalars().all()
    return paginated_response([shop_to_dict(s) for s in shops], page, limit, total)


@router.post("", status_code=201)
async def create_shop(
    payload: ShopCreateRequest,
    ctx: RequestContext = Depends(require_user),
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    require_role(ctx, SHOP_CREATOR_ROLES, "Only owners or administrators can create shops")
    owner_user_id = payload.owner_user_id
    if ctx.role == UserRole.OWNER:
        if owner_user_id is not None and owner_user_id != ctx.user_id:
            raise ForbiddenError("Owners can only create shops they own")
        owner_user_id = ctx.user_id

    shop = Shop(
        tenant_id=tenant_id,
        name=payload.name,
        address=payload.address,
        formatted_address=payload.formatted_address,
        phone=payload.phone,
        gender=payload.gender,
        latitude=payload.latitude,
        longitude=payload.longitude,
    )
    session.add(shop)
    await session.flush()
    if owner_user_id is not None:
        session.add(Staff(tenant_id=tenant_id, shop_id=shop.id, user_id=owner_user_id, role=StaffRole.OWNER))
    await session.commit()

    logger.info(f"Created shop {shop.id} tenant={tenant_id} owner={owner_user_id}")
    return success_response(shop_to_dict(shop))


@router.get("/{shop_id}")
async def get_shop(
    shop_id: uuid.UUID,
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    shop = await get_shop_or_404(session, shop_id, tenant_id)
    return success_response(shop_to_dict(shop))


@router.patch("/{shop_id}")
async def update_shop(
    shop_id: uuid.UUID,
    payload: ShopUpdateRequest,
    ctx: RequestContext = Depends(require_user),
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    shop = await get_shop_or_404(session, shop_id, tenant_id)
    await ensure_shop_admin(session, ctx, shop_id, tenant_id)

    changes = payload.model_dump(exclude_unset=True)
    for field in ("name", "address", "phone", "gender"):
        if field in changes and changes[field] is None:
            raise ValidationError(f"{field} cannot be cleared", {field: ["must not be null"]})
    for field, value in changes.items():
        setattr(shop, field, value)
    await session.commit()

    logger.info(f"Updated shop {shop_id}: {', '.join(sorted(changes)) or 'no changes'}")
    return success_response(shop_to_dict(shop))


@router.delete("/{shop_id}")
async def delete_shop(
    shop_id: uuid.UUID,
    ctx: RequestContext = Depends(require_user),
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    require_role(ctx, PRIVILEGED_ROLES, "Only administrators can delete shops")
    shop = await get_shop_or_404(session, shop_id, tenant_id)
    await session.delete(shop)
    await session.commit()
    logger.info(f"Deleted shop {shop_id} tenant={tenant_id}")
    return success_response({"ok": True})


# ────────────────────────────────────────────────────────────────
# Working Hours Endpoints
# ────────────────────────────────────────────────────────────────

@router.get("/{shop_id}/hours")
async def get_shop_hours(
    shop_id: uuid.UUID,
    day: Optional[int] = Query(None, ge=0, le=6),
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_app_settings),
):
    await get_shop_or_404(session, shop_id, tenant_id)

    stmt = select(ShopHours).where(ShopHours.shop_id == shop_id)
    if day is not None:
        stmt = stmt.where(ShopHours.weekday == day)
    result = await session.execute(stmt.order_by(ShopHours.weekday, ShopHours.open_minutes))
    normalized = [hours_to_dict(h) for h in result.scalars().all()]

    if day is not None and not normalized:
        return success_response([default_hours_entry(day, settings)])
    return success_response(normalized)


@router.post("/{shop_id}/hours", status_code=201)
async def create_shop_hours(
    shop_id: uuid.UUID,
    payload: HoursCreateRequest,
    ctx: RequestContext = Depends(require_user),
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    await get_shop_or_404(session, shop_id, tenant_id)
    await ensure_shop_admin(session, ctx, shop_id, tenant_id)

    open_min, close_min = resolve_period(
        payload.open_24h, payload.open_minutes, payload.close_minutes, payload.open, payload.close
    )
    await _ensure_period_free(session, shop_id, payload.weekday, open_min, close_min)
    hours = ShopHours(
        shop_id=shop_id,
        weekday=payload.weekday,
        open_minutes=open_min,
        close_minutes=close_min,
        open_24h=payload.open_24h,
    )
    session.add(hours)
    await session.commit()
    logger.info(f"Shop {shop_id} hours added: day {hours.weekday} {from_minutes(open_min)}-{from_minutes(close_min)}")
    return success_response(hours_to_dict(hours))


@router.patch("/{shop_id}/hours/{hour_id}")
async def update_shop_hours(
    shop_id: uuid.UUID,
    hour_id: uuid.UUID,
    payload: HoursUpdateRequest,
    ctx: RequestContext = Depends(require_user),
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    await get_shop_or_404(session, shop_id, tenant_id)
    await ensure_shop_admin(session, ctx, shop_id, tenant_id)
    hours = await _get_hours_or_404(session, shop_id, hour_id)

    open_24h = hours.open_24h if payload.open_24h is None else payload.open_24h
    # Unspecified bounds keep their stored values
    open_minutes = payload.open_minutes
    if open_minutes is None and payload.open is None:
        open_minutes = hours.open_minutes
    close_minutes = payload.close_minutes
    if close_minutes is None and payload.close is None:
        close_minutes = hours.close_minutes
    open_min, close_min = resolve_period(open_24h, open_minutes, close_minutes, payload.open, payload.close)

    weekday = hours.weekday if payload.weekday is None else payload.weekday
    await _ensure_period_free(session, shop_id, weekday, open_min, close_min, exclude_id=hours.id)
    hours.weekday = weekday
    hours.open_minutes = open_min
    hours.close_minutes = close_min
    hours.open_24h = open_24h
    await session.commit()
    return success_response(hours_to_dict(hours))


@router.delete("/{shop_id}/hours/{hour_id}")
async def delete_shop_hours(
    shop_id: uuid.UUID,
    hour_id: uuid.UUID,
    ctx: RequestContext = Depends(require_user),
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    await get_shop_or_404(session, shop_id, tenant_id)
    await ensure_shop_admin(session, ctx, shop_id, tenant_id)
    hours = await _get_hours_or_404(session, shop_id, hour_id)
    await session.delete(hours)
    await session.commit()
    return success_response({"ok": True})


# ────────────────────────────────────────────────────────────────
# Staff Endpoints
# ────────────────────────────────────────────────────────────────

@router.get("/{shop_id}/staff")
async def list_shop_staff(
    shop_id: uuid.UUID,
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    await get_shop_or_404(session, shop_id, tenant_id)
    result = await session.execute(
        scoped_select(Staff, tenant_id).where(Staff.shop_id == shop_id).order_by(Staff.created_at)
    )
    return success_response([staff_to_dict(s) for s in result.scalars().all()])


@router.post("/{shop_id}/staff", status_code=201)
async def add_shop_staff(
    shop_id: uuid.UUID,
    payload: StaffCreateRequest,
    ctx: RequestContext = Depends(require_user),
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    """
    Add a staff member.

    A shop without any owner or manager lets an owner- or manager-role caller
    add themselves as its first owner/manager. After that, only shop admins add
    staff.
    """
    await get_shop_or_404(session, shop_id, tenant_id)
    if ctx.role in PRIVILEGED_ROLES or await has_shop_admins(session, tenant_id, shop_id):
        await ensure_shop_admin(session, ctx, shop_id, tenant_id)
    else:
        if ctx.role not in BOOTSTRAP_ROLES or payload.user_id != ctx.user_id:
            raise ForbiddenError("The first shop admin can only add themselves")
        if payload.role not in SHOP_ADMIN_STAFF_ROLES:
            raise ForbiddenError("The first shop admin must be an owner or manager", {"role": payload.role.value})

    existing = await session.execute(
        scoped_select(Staff, tenant_id).where(Staff.shop_id == shop_id, Staff.user_id == payload.user_id)
    )
    duplicate = existing.scalar_one_or_none()
    if duplicate is not None:
        raise DuplicateError("This user is already on the shop's staff", {"staffId": str(duplicate.id)})

    staff = Staff(
        tenant_id=tenant_id,
        shop_id=shop_id,
        user_id=payload.user_id,
        role=payload.role,
        is_active=payload.is_active,
    )
    session.add(staff)
    await session.commit()
    logger.info(f"Staff {staff.id} ({staff.role.value}) added to shop {shop_id} by {ctx.user_id}")
    return success_response(staff_to_dict(staff))


@router.get("/{shop_id}/staff/{staff_id}")
async def get_shop_staff(
    shop_id: uuid.UUID,
    staff_id: uuid.UUID,
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    await get_shop_or_404(session, shop_id, tenant_id)
    staff = await _get_staff_in_shop(session, tenant_id, shop_id, staff_id)
    return success_response(staff_to_dict(staff))


@router.patch("/{shop_id}/staff/{staff_id}")
async def update_shop_staff(
    shop_id: uuid.UUID,
    staff_id: uuid.UUID,
    payload: StaffUpdateRequest,
    ctx: RequestContext = Depends(require_user),
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    await get_shop_or_404(session, shop_id, tenant_id)
    await ensure_shop_admin(session, ctx, shop_id, tenant_id)
    staff = await _get_staff_in_shop(session, tenant_id, shop_id, staff_id)

    if payload.role is not None:
        staff.role = payload.role
    if payload.is_active is not None:
        staff.is_active = payload.is_active
    await session.commit()
    logger.info(f"Staff {staff_id} updated: role={staff.role.value} active={staff.is_active}")
    return success_response(staff_to_dict(staff))


@router.delete("/{shop_id}/staff/{staff_id}")
async def remove_shop_staff(
    shop_id: uuid.UUID,
    staff_id: uuid.UUID,
    ctx: RequestContext = Depends(require_user),
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    await get_shop_or_404(session, shop_id, tenant_id)
    await ensure_shop_admin(session, ctx, shop_id, tenant_id)
    staff = await _get_staff_in_shop(session, tenant_id, shop_id, staff_id)
    await session.delete(staff)
    await session.commit()
    logger.info(f"Staff {staff_id} removed from shop {shop_id}")
    return success_response({"ok": True})
