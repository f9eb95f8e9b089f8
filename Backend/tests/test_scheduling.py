"""
Unit tests for booking time arithmetic, conflict detection and status transitions.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone

import pytest

from kuaforun.core.errors import BusinessRuleError, ConflictError, InvalidTransitionError, ValidationError
from kuaforun.models import BookingStatus
from kuaforun.scheduling import (
    OpeningPeriod,
    can_transition,
    compute_end_time,
    ensure_lead_time,
    ensure_no_conflict,
    ensure_transition,
    ensure_within_hours,
    find_conflict,
    from_minutes,
    intervals_overlap,
    is_within_hours,
    to_minutes,
    weekday_index,
)


@dataclass
class FakeBooking:
    start_time: time
    end_time: time
    status: BookingStatus = BookingStatus.PENDING
    id: uuid.UUID = field(default_factory=uuid.uuid4)


def slot(start: str, end: str, status=BookingStatus.PENDING) -> FakeBooking:
    return FakeBooking(time.fromisoformat(start), time.fromisoformat(end), status)


# ────────────────────────────────────────────────────────────────
# Time helpers
# ────────────────────────────────────────────────────────────────

def test_minutes_round_trip_examples():
    assert to_minutes("09:30") == 570
    assert from_minutes(570) == "09:30"
    assert from_minutes(0) == "00:00"


@pytest.mark.parametrize("raw", ["9", "24:00", "12:60", "ab:cd", ""])
def test_to_minutes_rejects_garbage(raw):
    with pytest.raises(ValidationError):
        to_minutes(raw)


def test_compute_end_time_sums_durations():
    assert compute_end_time("10:00", [30, 45]) == "11:15"


def test_compute_end_time_rejects_past_midnight():
    with pytest.raises(ValidationError):
        compute_end_time("23:30", [45])


def test_compute_end_time_latest_end_is_2359():
    assert compute_end_time("23:30", [29]) == "23:59"
    with pytest.raises(ValidationError) as exc_info:
        compute_end_time("23:30", [30])
    assert "23:59" in exc_info.value.message
    assert exc_info.value.details == {"endTime": ["must be 23:59 or earlier"]}


def test_weekday_index_sunday_is_zero():
    sunday = datetime(2024, 6, 2).date()
    assert weekday_index(sunday) == 0
    assert weekday_index(sunday + timedelta(days=6)) == 6


# ────────────────────────────────────────────────────────────────
# Overlap
# ────────────────────────────────────────────────────────────────

def test_half_open_intervals_touching_do_not_overlap():
    assert not intervals_overlap(540, 600, 600, 660)
    assert not intervals_overlap(600, 660, 540, 600)


def test_partial_and_nested_overlap():
    assert intervals_overlap(540, 600, 570, 630)
    assert intervals_overlap(540, 660, 570, 600)
    assert intervals_overlap(570, 600, 540, 660)


def test_find_conflict_ignores_cancelled():
    existing = [slot("10:00", "11:00", BookingStatus.CANCELLED)]
    assert find_conflict(time(10, 30), time(11, 30), existing) is None


def test_find_conflict_returns_colliding_booking():
    first = slot("09:00", "09:30")
    second = slot("10:00", "11:00")
    clash = find_conflict(time(10, 30), time(11, 30), [first, second])
    assert clash is second


def test_find_conflict_excludes_booking_being_edited():
    own = slot("10:00", "11:00")
    assert find_conflict(time(10, 15), time(11, 15), [own], exclude_id=own.id) is None


def test_ensure_no_conflict_carries_conflicting_id():
    existing = slot("10:00", "11:00")
    with pytest.raises(ConflictError) as exc_info:
        ensure_no_conflict(time(10, 59), time(11, 30), [existing])
    assert exc_info.value.conflicting_id == existing.id
    assert exc_info.value.status_code == 409


def test_back_to_back_bookings_are_allowed():
    ensure_no_conflict(time(11, 0), time(11, 30), [slot("10:00", "11:00")])


# ────────────────────────────────────────────────────────────────
# Working hours / lead time
# ────────────────────────────────────────────────────────────────

def test_within_any_period():
    periods = [OpeningPeriod(540, 720), OpeningPeriod(780, 1080)]
    assert is_within_hours(540, 600, periods)
    assert is_within_hours(800, 1080, periods)
    assert not is_within_hours(700, 800, periods)


def test_open_24h_accepts_everything():
    assert is_within_hours(0, 1439, [OpeningPeriod(0, 0, open_24h=True)])


def test_outside_hours_is_business_rule_error():
    with pytest.raises(BusinessRuleError) as exc_info:
        ensure_within_hours(1050, 1110, [OpeningPeriod(540, 1080)])
    assert exc_info.value.status_code == 422


def test_lead_time_only_applies_to_near_future():
    now = datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)
    with pytest.raises(BusinessRuleError):
        ensure_lead_time(now + timedelta(minutes=10), now, 30)
    ensure_lead_time(now + timedelta(minutes=30), now, 30)
    ensure_lead_time(now - timedelta(minutes=10), now, 30)
    ensure_lead_time(now + timedelta(minutes=1), now, 0)


# ────────────────────────────────────────────────────────────────
# Status transitions
# ────────────────────────────────────────────────────────────────

def test_completed_cannot_go_back_to_pending():
    with pytest.raises(InvalidTransitionError):
        ensure_transition(BookingStatus.COMPLETED, BookingStatus.PENDING)


def test_pending_confirmed_completed_path():
    ensure_transition(BookingStatus.PENDING, BookingStatus.CONFIRMED)
    ensure_transition(BookingStatus.CONFIRMED, BookingStatus.COMPLETED)


@pytest.mark.parametrize(
    "current,target,allowed",
    [
        (BookingStatus.PENDING, BookingStatus.CANCELLED, True),
        (BookingStatus.PENDING, BookingStatus.COMPLETED, False),
        (BookingStatus.PENDING, BookingStatus.NO_SHOW, False),
        (BookingStatus.CONFIRMED, BookingStatus.NO_SHOW, True),
        (BookingStatus.CONFIRMED, BookingStatus.PENDING, False),
        (BookingStatus.CANCELLED, BookingStatus.CONFIRMED, False),
        (BookingStatus.NO_SHOW, BookingStatus.COMPLETED, False),
        (BookingStatus.CONFIRMED, BookingStatus.CONFIRMED, True),
    ],
)
def test_transition_table(current, target, allowed):
    assert can_transition(current, target) is allowed
