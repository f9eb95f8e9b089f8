"""
Booking routes and persistence.

A booking is a (tenant, staff, date, [start, end)) tuple. Two non-cancelled
bookings of the same staff member on the same date never overlap. Bookings
without a staff member are checked against the other unassigned bookings of
the same shop and date only.

Check and insert run in one transaction after locking the staff row (or the
shop row for unassigned bookings), so two concurrent requests for the same
slot are serialized by the database.

    POST   /bookings
    GET    /bookings
    GET    /bookings/{booking_id}
    PATCH  /bookings/{booking_id}
    DELETE /bookings/{booking_id}
    GET    /bookings/barber/{staff_id}/date/{day}
"""

import logging
import uuid
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import List, Optional, Sequence

from fastapi import APIRouter, Depends, Query
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .core.config import Settings, get_app_settings
from .core.db import get_session
from .core.errors import BusinessRuleError, ForbiddenError, NotFoundError, ValidationError
from .core.request_context import (
    MODERATOR_ROLES,
    PRIVILEGED_ROLES,
    STAFF_ROLES,
    RequestContext,
    UserRole,
    require_role,
    require_user,
)
from .core.responses import paginated_response, success_response
from .models import Booking, BookingServiceItem, BookingStatus, Service, Shop, Staff
from .scheduling import (
    HHMM_PATTERN,
    MINUTES_PER_DAY,
    compute_end_time,
    ensure_lead_time,
    ensure_no_conflict,
    ensure_transition,
    ensure_within_hours,
    find_conflict,
    from_minutes,
    minutes_to_time,
    time_to_minutes,
    to_minutes,
    weekday_index,
)
from .shops import get_shop_or_404, load_opening_periods
from .tenancy import get_services_by_ids, get_tenant_id, list_active_barbers, require_owned, scoped_select

logger = logging.getLogger(__name__)

PRICE_TOLERANCE = Decimal("0.01")

# Roles allowed to manage any booking in the tenant
BOOKING_ADMIN_ROLES = PRIVILEGED_ROLES | MODERATOR_ROLES
STAFF_VIEW_ROLES = BOOKING_ADMIN_ROLES | STAFF_ROLES


# ────────────────────────────────────────────────────────────────
# Request Models
# ────────────────────────────────────────────────────────────────

class BookingCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    customer_id: Optional[uuid.UUID] = Field(None, alias="customerId")
    staff_id: Optional[uuid.UUID] = Field(
        None, validation_alias=AliasChoices("staffId", "barberId", "staff_id")
    )
    shop_id: uuid.UUID = Field(..., alias="shopId")
    service_ids: List[uuid.UUID] = Field(..., alias="serviceIds", min_length=1)
    booking_date: date = Field(..., alias="bookingDate")
    start_time: str = Field(..., alias="startTime", pattern=HHMM_PATTERN)
    # Ignored; the end is derived from the service durations
    end_time: Optional[str] = Field(None, alias="endTime", pattern=HHMM_PATTERN)
    total_price: Optional[Decimal] = Field(None, alias="totalPrice", gt=0)
    notes: Optional[str] = Field(None, max_length=2000)


class BookingUpdateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    staff_id: Optional[uuid.UUID] = Field(
        None, validation_alias=AliasChoices("staffId", "barberId", "staff_id")
    )
    service_ids: Optional[List[uuid.UUID]] = Field(None, alias="serviceIds", min_length=1)
    booking_date: Optional[date] = Field(None, alias="bookingDate")
    start_time: Optional[str] = Field(None, alias="startTime", pattern=HHMM_PATTERN)
    status: Optional[BookingStatus] = None
    total_price: Optional[Decimal] = Field(None, alias="totalPrice", gt=0)
    notes: Optional[str] = Field(None, max_length=2000)


# ────────────────────────────────────────────────────────────────
# Serializers
# ────────────────────────────────────────────────────────────────

def booking_to_dict(booking: Booking, service_ids: Sequence[uuid.UUID] = ()) -> dict:
    return {
        "id": str(booking.id),
        "tenantId": booking.tenant_id,
        "customerId": str(booking.customer_id),
        "staffId": str(booking.staff_id) if booking.staff_id else None,
        "shopId": str(booking.shop_id),
        "serviceIds": [str(sid) for sid in service_ids],
        "bookingDate": booking.booking_date.isoformat(),
        "startTime": booking.start_time.strftime("%H:%M"),
        "endTime": booking.end_time.strftime("%H:%M"),
        "status": booking.status.value,
        "totalPrice": float(booking.total_price),
        "notes": booking.notes,
        "createdAt": booking.created_at.isoformat() if booking.created_at else None,
    }


async def _service_ids_for(session: AsyncSession, booking_ids: Sequence[uuid.UUID]) -> dict:
    if not booking_ids:
        return {}
    result = await session.execute(
        select(BookingServiceItem.booking_id, BookingServiceItem.service_id).where(
            BookingServiceItem.booking_id.in_(booking_ids)
        )
    )
    mapping: dict[uuid.UUID, list[uuid.UUID]] = {}
    for booking_id, service_id in result.all():
        mapping.setdefault(booking_id, []).append(service_id)
    return mapping


# ────────────────────────────────────────────────────────────────
# Scope queries
# ────────────────────────────────────────────────────────────────

async def bookings_for_staff(
    session: AsyncSession, tenant_id: str, staff_id: uuid.UUID, day: date
) -> Sequence[Booking]:
    result = await session.execute(
        scoped_select(Booking, tenant_id).where(
            Booking.staff_id == staff_id,
            Booking.booking_date == day,
            Booking.status != BookingStatus.CANCELLED,
        )
    )
    return result.scalars().all()


async def unassigned_bookings_for_shop(
    session: AsyncSession, tenant_id: str, shop_id: uuid.UUID, day: date
) -> Sequence[Booking]:
    result = await session.execute(
        scoped_select(Booking, tenant_id).where(
            Booking.shop_id == shop_id,
            Booking.staff_id.is_(None),
            Booking.booking_date == day,
            Booking.status != BookingStatus.CANCELLED,
        )
    )
    return result.scalars().all()


async def _lock_staff(
    session: AsyncSession, tenant_id: str, shop_id: uuid.UUID, staff_id: uuid.UUID
) -> Staff:
    staff = await require_owned(session, Staff, staff_id, tenant_id, for_update=True)
    if not staff or staff.shop_id != shop_id or not staff.is_active:
        raise ValidationError(
            "Staff member does not belong to this shop or is inactive",
            {"staffId": str(staff_id)},
        )
    return staff


async def _lock_shop(session: AsyncSession, tenant_id: str, shop_id: uuid.UUID) -> None:
    await require_owned(session, Shop, shop_id, tenant_id, for_update=True)


async def _reserve_scope(
    session: AsyncSession,
    tenant_id: str,
    shop_id: uuid.UUID,
    staff_id: Optional[uuid.UUID],
    day: date,
    start: time,
    end: time,
    auto_assign: bool,
    exclude_id: Optional[uuid.UUID] = None,
) -> Optional[uuid.UUID]:
    """
    Lock the booking scope and verify [start, end) is free in it.

    Returns the staff id the booking ends up with: the requested one, an
    auto-assigned barber, or None for a shop-level booking.
    """
    if staff_id is not None:
        await _lock_staff(session, tenant_id, shop_id, staff_id)
        existing = await bookings_for_staff(session, tenant_id, staff_id, day)
        ensure_no_conflict(start, end, existing, exclude_id)
        return staff_id

    if auto_assign:
        for barber in await list_active_barbers(session, tenant_id, shop_id):
            existing = await bookings_for_staff(session, tenant_id, barber.id, day)
            if find_conflict(start, end, existing, exclude_id) is not None:
                continue
            # Re-check under the row lock; another request may have taken the slot
            await _lock_staff(session, tenant_id, shop_id, barber.id)
            existing = await bookings_for_staff(session, tenant_id, barber.id, day)
            if find_conflict(start, end, existing, exclude_id) is None:
                logger.info(f"Auto-assigned barber {barber.id} for {day} {start:%H:%M}")
                return barber.id

    await _lock_shop(session, tenant_id, shop_id)
    existing = await unassigned_bookings_for_shop(session, tenant_id, shop_id, day)
    ensure_no_conflict(start, end, existing, exclude_id)
    return None


# ────────────────────────────────────────────────────────────────
# Validation helpers
# ────────────────────────────────────────────────────────────────

async def _resolve_services(
    session: AsyncSession, tenant_id: str, shop_id: uuid.UUID, service_ids: Sequence[uuid.UUID]
) -> Sequence[Service]:
    unique_ids = list(dict.fromkeys(service_ids))
    services = await get_services_by_ids(session, tenant_id, shop_id, unique_ids)
    if len(services) != len(unique_ids):
        found = {s.id for s in services}
        missing = [str(sid) for sid in unique_ids if sid not in found]
        raise ValidationError(
            "One or more services are invalid or inactive for this shop",
            {"serviceIds": missing},
        )
    return services


def _check_price(services: Sequence[Service], total_price: Optional[Decimal]) -> Decimal:
    expected = sum((Decimal(s.price) for s in services), Decimal("0"))
    if total_price is not None and abs(Decimal(total_price) - expected) > PRICE_TOLERANCE:
        raise ValidationError(
            "Total price does not match the selected services",
            {"expected": float(expected), "received": float(total_price)},
        )
    return expected


async def _check_schedule(
    session: AsyncSession,
    settings: Settings,
    shop_id: uuid.UUID,
    day: date,
    start_min: int,
    end_min: int,
    now: datetime,
) -> None:
    if end_min <= start_min:
        raise ValidationError("Start time must be before end time")
    scheduled_start = datetime.combine(day, minutes_to_time(start_min), tzinfo=timezone.utc)
    ensure_lead_time(scheduled_start, now, settings.booking_min_lead_minutes)
    periods = await load_opening_periods(session, shop_id, weekday_index(day), settings)
    ensure_within_hours(start_min, end_min, periods)


def _ensure_can_access(ctx: RequestContext, booking: Booking) -> None:
    if ctx.role == UserRole.CUSTOMER and booking.customer_id != ctx.user_id:
        raise ForbiddenError("You can only access your own bookings")


# ────────────────────────────────────────────────────────────────
# Operations
# ────────────────────────────────────────────────────────────────

async def create_booking(
    session: AsyncSession,
    tenant_id: str,
    payload: BookingCreateRequest,
    ctx: RequestContext,
    settings: Settings,
    now: Optional[datetime] = None,
) -> dict:
    now = now or datetime.now(timezone.utc)

    customer_id = payload.customer_id
    if ctx.role == UserRole.CUSTOMER:
        if customer_id is not None and customer_id != ctx.user_id:
            raise ForbiddenError("Customers can only book for themselves")
        customer_id = ctx.user_id
    if customer_id is None:
        raise ValidationError("customerId is required", {"customerId": ["field required"]})

    await get_shop_or_404(session, payload.shop_id, tenant_id)
    services = await _resolve_services(session, tenant_id, payload.shop_id, payload.service_ids)
    total_price = _check_price(services, payload.total_price)

    start_min = to_minutes(payload.start_time)
    end_min = to_minutes(compute_end_time(payload.start_time, [s.duration_minutes for s in services]))
    await _check_schedule(session, settings, payload.shop_id, payload.booking_date, start_min, end_min, now)

    start, end = minutes_to_time(start_min), minutes_to_time(end_min)
    staff_id = await _reserve_scope(
        session,
        tenant_id,
        payload.shop_id,
        payload.staff_id,
        payload.booking_date,
        start,
        end,
        auto_assign=settings.booking_auto_assign,
    )

    booking = Booking(
        tenant_id=tenant_id,
        customer_id=customer_id,
        staff_id=staff_id,
        shop_id=payload.shop_id,
        booking_date=payload.booking_date,
        start_time=start,
        end_time=end,
        status=BookingStatus.PENDING,
        total_price=total_price,
        notes=payload.notes,
    )
    session.add(booking)
    await session.flush()
    for service in services:
        session.add(BookingServiceItem(tenant_id=tenant_id, booking_id=booking.id, service_id=service.id))
    await session.commit()

    logger.info(
        f"Created booking {booking.id} tenant={tenant_id} shop={booking.shop_id} "
        f"staff={booking.staff_id} {booking.booking_date} {from_minutes(start_min)}-{from_minutes(end_min)}"
    )
    return booking_to_dict(booking, [s.id for s in services])


async def update_booking(
    session: AsyncSession,
    tenant_id: str,
    booking_id: uuid.UUID,
    payload: BookingUpdateRequest,
    ctx: RequestContext,
    settings: Settings,
    now: Optional[datetime] = None,
) -> dict:
    now = now or datetime.now(timezone.utc)
    changes = payload.model_dump(exclude_unset=True)

    if ctx.role == UserRole.CUSTOMER and (
        set(changes) - {"status"} or changes.get("status") != BookingStatus.CANCELLED
    ):
        raise ForbiddenError("Customers can only cancel their bookings")

    booking = await require_owned(session, Booking, booking_id, tenant_id, for_update=True)
    if not booking:
        raise NotFoundError("Booking not found", {"bookingId": str(booking_id)})
    _ensure_can_access(ctx, booking)

    service_ids = (await _service_ids_for(session, [booking.id])).get(booking.id, [])
    day = payload.booking_date or booking.booking_date
    start_min = to_minutes(payload.start_time) if payload.start_time else time_to_minutes(booking.start_time)
    end_min = start_min + (time_to_minutes(booking.end_time) - time_to_minutes(booking.start_time))
    total_price = booking.total_price

    if payload.total_price is not None and payload.service_ids is None:
        raise ValidationError(
            "totalPrice can only be changed together with serviceIds",
            {"totalPrice": ["send serviceIds with totalPrice"]},
        )

    services = None
    if payload.service_ids is not None:
        services = await _resolve_services(session, tenant_id, booking.shop_id, payload.service_ids)
        total_price = _check_price(services, payload.total_price)
        end_min = to_minutes(
            compute_end_time(from_minutes(start_min), [s.duration_minutes for s in services])
        )
        service_ids = [s.id for s in services]
    elif end_min >= MINUTES_PER_DAY:
        raise ValidationError("Booking must end by 23:59 on the same day")

    staff_id = payload.staff_id if "staff_id" in changes else booking.staff_id
    target_status = payload.status or booking.status
    if payload.status is not None:
        ensure_transition(booking.status, payload.status)
        if payload.status == BookingStatus.COMPLETED and staff_id is None:
            raise BusinessRuleError("A staff member must be assigned to complete a booking")

    reschedule = (
        day != booking.booking_date
        or start_min != time_to_minutes(booking.start_time)
        or end_min != time_to_minutes(booking.end_time)
        or staff_id != booking.staff_id
    )
    if reschedule and target_status != BookingStatus.CANCELLED:
        await _check_schedule(session, settings, booking.shop_id, day, start_min, end_min, now)
        staff_id = await _reserve_scope(
            session,
            tenant_id,
            booking.shop_id,
            staff_id,
            day,
            minutes_to_time(start_min),
            minutes_to_time(end_min),
            auto_assign=False,
            exclude_id=booking.id,
        )
    elif staff_id is not None and staff_id != booking.staff_id:
        # No overlap check when cancelling, but the staff member must still be ours
        await _lock_staff(session, tenant_id, booking.shop_id, staff_id)

    booking.booking_date = day
    booking.start_time = minutes_to_time(start_min)
    booking.end_time = minutes_to_time(end_min)
    booking.staff_id = staff_id
    booking.total_price = total_price
    if payload.status is not None and payload.status != booking.status:
        logger.info(f"Booking {booking.id} status {booking.status.value} -> {payload.status.value}")
        booking.status = payload.status
    if "notes" in changes:
        booking.notes = payload.notes
    booking.updated_at = now

    if services is not None:
        await session.execute(
            delete(BookingServiceItem).where(
                BookingServiceItem.booking_id == booking.id,
                BookingServiceItem.tenant_id == tenant_id,
            )
        )
        for service in services:
            session.add(BookingServiceItem(tenant_id=tenant_id, booking_id=booking.id, service_id=service.id))

    await session.commit()
    return booking_to_dict(booking, service_ids)


# ────────────────────────────────────────────────────────────────
# Router
# ────────────────────────────────────────────────────────────────

router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.post("", status_code=201)
async def create_booking_endpoint(
    payload: BookingCreateRequest,
    ctx: RequestContext = Depends(require_user),
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_app_settings),
):
    booking = await create_booking(session, tenant_id, payload, ctx, settings)
    return success_response(booking)


@router.get("")
async def list_bookings(
    customer_id: Optional[uuid.UUID] = Query(None, alias="customerId"),
    staff_id: Optional[uuid.UUID] = Query(None, alias="staffId"),
    shop_id: Optional[uuid.UUID] = Query(None, alias="shopId"),
    status: Optional[BookingStatus] = Query(None),
    day: Optional[date] = Query(None, alias="date"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    ctx: RequestContext = Depends(require_user),
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    if ctx.role == UserRole.CUSTOMER:
        customer_id = ctx.user_id

    stmt = scoped_select(Booking, tenant_id)
    if customer_id:
        stmt = stmt.where(Booking.customer_id == customer_id)
    if staff_id:
        stmt = stmt.where(Booking.staff_id == staff_id)
    if shop_id:
        stmt = stmt.where(Booking.shop_id == shop_id)
    if status:
        stmt = stmt.where(Booking.status == status)
    if day:
        stmt = stmt.where(Booking.booking_date == day)

    total = (await session.execute(select(func.count()).select_from(stmt.subquery()))).scalar_one()
    result = await session.execute(
        stmt.order_by(Booking.booking_date.desc(), Booking.start_time.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    bookings = result.scalars().all()
    service_map = await _service_ids_for(session, [b.id for b in bookings])
    return paginated_response(
        [booking_to_dict(b, service_map.get(b.id, [])) for b in bookings], page, limit, total
    )


@router.get("/{booking_id}")
async def get_booking(
    booking_id: uuid.UUID,
    ctx: RequestContext = Depends(require_user),
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    booking = await require_owned(session, Booking, booking_id, tenant_id)
    if not booking:
        raise NotFoundError("Booking not found", {"bookingId": str(booking_id)})
    _ensure_can_access(ctx, booking)
    service_map = await _service_ids_for(session, [booking.id])
    return success_response(booking_to_dict(booking, service_map.get(booking.id, [])))


@router.get("/barber/{staff_id}/date/{day}")
async def list_staff_day(
    staff_id: uuid.UUID,
    day: date,
    ctx: RequestContext = Depends(require_user),
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    """A staff member's bookings on one date, earliest first. Cancelled ones included."""
    require_role(ctx, STAFF_VIEW_ROLES, "Customers cannot list a barber's bookings")
    result = await session.execute(
        scoped_select(Booking, tenant_id)
        .where(Booking.staff_id == staff_id, Booking.booking_date == day)
        .order_by(Booking.start_time)
    )
    bookings = result.scalars().all()
    service_map = await _service_ids_for(session, [b.id for b in bookings])
    return success_response([booking_to_dict(b, service_map.get(b.id, [])) for b in bookings])


@router.patch("/{booking_id}")
async def update_booking_endpoint(
    booking_id: uuid.UUID,
    payload: BookingUpdateRequest,
    ctx: RequestContext = Depends(require_user),
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_app_settings),
):
    booking = await update_booking(session, tenant_id, booking_id, payload, ctx, settings)
    return success_response(booking)


@router.delete("/{booking_id}")
async def delete_booking(
    booking_id: uuid.UUID,
    ctx: RequestContext = Depends(require_user),
    tenant_id: str = Depends(get_tenant_id),
    session: AsyncSession = Depends(get_session),
):
    require_role(ctx, BOOKING_ADMIN_ROLES, "Only managers or administrators can delete bookings")
    booking = await require_owned(session, Booking, booking_id, tenant_id)
    if not booking:
        raise NotFoundError("Booking not found", {"bookingId": str(booking_id)})
    await session.delete(booking)
    await session.commit()
    logger.info(f"Deleted booking {booking_id} tenant={tenant_id}")
    return success_response({"ok": True})
