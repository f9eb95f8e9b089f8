"""
Booking time arithmetic, conflict detection and status transitions.

Nothing in this module touches the database. Times are "HH:MM" strings or
minutes since midnight; intervals are half-open, so a booking ending at 10:00
does not collide with one starting at 10:00.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from typing import Iterable, Optional, Protocol, Sequence

from .core.errors import BusinessRuleError, ConflictError, InvalidTransitionError, ValidationError
from .models import BookingStatus

MINUTES_PER_DAY = 24 * 60
HHMM_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"

# Status changes a booking may go through. Same-state updates are no-ops.
ALLOWED_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset(
        {BookingStatus.COMPLETED, BookingStatus.CANCELLED, BookingStatus.NO_SHOW}
    ),
    BookingStatus.CANCELLED: frozenset(),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.NO_SHOW: frozenset(),
}


class BookingLike(Protocol):
    id: uuid.UUID
    start_time: time
    end_time: time
    status: BookingStatus


@dataclass(frozen=True)
class OpeningPeriod:
    open_minutes: int
    close_minutes: int
    open_24h: bool = False

    def contains(self, start_min: int, end_min: int) -> bool:
        if self.open_24h:
            return True
        return start_min >= self.open_minutes and end_min <= self.close_minutes


# ────────────────────────────────────────────────────────────────
# Time helpers
# ────────────────────────────────────────────────────────────────

def to_minutes(value: str) -> int:
    """Parse "HH:MM" into minutes since midnight."""
    try:
        hh, mm = value.split(":")[:2]
        hours, minutes = int(hh), int(mm)
    except (AttributeError, ValueError):
        raise ValidationError(f"Invalid time: {value!r}", {"time": ["expected HH:MM"]})
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        raise ValidationError(f"Invalid time: {value!r}", {"time": ["expected HH:MM"]})
    return hours * 60 + minutes


def from_minutes(total: int) -> str:
    return f"{total // 60:02d}:{total % 60:02d}"


def time_to_minutes(value: time) -> int:
    return value.hour * 60 + value.minute


def minutes_to_time(total: int) -> time:
    return time(hour=total // 60, minute=total % 60)


def compute_end_time(start: str, durations: Iterable[int]) -> str:
    """
    End of a booking made of back-to-back services starting at ``start``.

    End times are stored as a time of day, so the latest possible end is
    23:59; a booking ending exactly at 24:00 is rejected like one that spills
    into the next day.
    """
    end_min = to_minutes(start) + sum(d or 0 for d in durations)
    if end_min >= MINUTES_PER_DAY:
        raise ValidationError(
            "Booking must end by 23:59 on the same day", {"endTime": ["must be 23:59 or earlier"]}
        )
    return from_minutes(end_min)


def intervals_overlap(start_a: int, end_a: int, start_b: int, end_b: int) -> bool:
    return start_a < end_b and start_b < end_a


# ────────────────────────────────────────────────────────────────
# Conflict detection
# ────────────────────────────────────────────────────────────────

def find_conflict(
    start: time,
    end: time,
    existing: Iterable[BookingLike],
    exclude_id: Optional[uuid.UUID] = None,
) -> Optional[BookingLike]:
    """
    First booking in ``existing`` whose interval overlaps [start, end).

    ``existing`` must already be narrowed to one scope: a single staff member
    on one date, or the unassigned bookings of one shop on one date. Cancelled
    bookings and ``exclude_id`` (the booking being edited) are ignored.
    """
    start_min, end_min = time_to_minutes(start), time_to_minutes(end)
    for booking in existing:
        if booking.status == BookingStatus.CANCELLED:
            continue
        if exclude_id is not None and booking.id == exclude_id:
            continue
        if intervals_overlap(
            start_min, end_min, time_to_minutes(booking.start_time), time_to_minutes(booking.end_time)
        ):
            return booking
    return None


def ensure_no_conflict(
    start: time,
    end: time,
    existing: Iterable[BookingLike],
    exclude_id: Optional[uuid.UUID] = None,
) -> None:
    clash = find_conflict(start, end, existing, exclude_id)
    if clash is not None:
        raise ConflictError(
            f"Time slot {start:%H:%M}-{end:%H:%M} overlaps an existing booking",
            conflicting_id=clash.id,
        )


# ────────────────────────────────────────────────────────────────
# Working hours and lead time
# ────────────────────────────────────────────────────────────────

def weekday_index(day) -> int:
    """0=Sunday .. 6=Saturday, matching the hours table."""
    return (day.weekday() + 1) % 7


def is_within_hours(start_min: int, end_min: int, periods: Sequence[OpeningPeriod]) -> bool:
    return any(period.contains(start_min, end_min) for period in periods)


def ensure_within_hours(start_min: int, end_min: int, periods: Sequence[OpeningPeriod]) -> None:
    if not is_within_hours(start_min, end_min, periods):
        windows = ", ".join(
            "00:00-23:59" if p.open_24h else f"{from_minutes(p.open_minutes)}-{from_minutes(p.close_minutes)}"
            for p in periods
        )
        raise BusinessRuleError(
            "Booking is outside working hours",
            {"workingHours": windows},
        )


def ensure_lead_time(scheduled_start: datetime, now: datetime, min_lead_minutes: int) -> None:
    """Future bookings must start at least ``min_lead_minutes`` from now."""
    if min_lead_minutes <= 0:
        return
    if scheduled_start > now and scheduled_start - now < timedelta(minutes=min_lead_minutes):
        raise BusinessRuleError(
            f"Booking must start at least {min_lead_minutes} minutes from now"
        )


# ────────────────────────────────────────────────────────────────
# Status transitions
# ────────────────────────────────────────────────────────────────

def can_transition(current: BookingStatus, target: BookingStatus) -> bool:
    return current == target or target in ALLOWED_TRANSITIONS[current]


def ensure_transition(current: BookingStatus, target: BookingStatus) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Cannot change booking status from {current.value} to {target.value}",
            {"from": current.value, "to": target.value},
        )
