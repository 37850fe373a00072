"""Tests for calendars, slot occurrences and seat reservation.

All occurrence tests pin "now" to Tuesday 2030-01-01 12:00 UTC.

Covers:
- Slot validation (times, timezone, capacity)
- Projection of weekly slots over the lookahead window
- Started occurrences and full occurrences are hidden
- One-off slots override the weekly pattern on their date
- Wall-clock times converted from the slot's timezone to UTC
- Seat reservation, capacity exhaustion, cancellation frees a seat
- Booking status transitions
- Orientation calendar seeding
- Concurrent reservations of the last seat
"""

from datetime import date, datetime
from unittest.mock import patch

import pytest
import sqlalchemy as sa
from sqlalchemy import event

from conftest import fixed_now
from coachhub.errors import InvalidTransition, SlotUnavailable, ValidationFailed
from coachhub.models.calendar import AdminCalendar, CalendarBooking
from coachhub.services import availability_service

NOW = fixed_now()  # Tuesday
BOOKER = {"name": "Jamie Rivera", "email": "Jamie@Example.com"}


@pytest.fixture
def calendar():
    cal, error = availability_service.create_calendar(
        "Discovery Calls", "discovery", meeting_link="https://meet.example.com/abc",
    )
    assert error is None
    return cal


def _slot(calendar_id, **fields):
    values = {
        "day_of_week": 3,  # Wednesday
        "start_time": "10:00",
        "end_time": "11:00",
        "timezone": "UTC",
        "max_bookings": 1,
    }
    values.update(fields)
    slot, error = availability_service.add_slot(calendar_id, **values)
    assert error is None, error
    return slot


def _available(calendar_id, days=7, now=NOW):
    result, error = availability_service.list_available_slots(
        calendar_id, lookahead_days=days, now=now,
    )
    assert error is None
    return result["slots"]


class TestCalendars:

    def test_slug_must_be_unique(self, calendar):
        _, error = availability_service.create_calendar("Other", "discovery")
        assert isinstance(error, ValidationFailed)

    def test_meeting_link_must_be_url(self, calendar):
        _, error = availability_service.update_meeting_link(calendar.id, "zoom room 4")
        assert isinstance(error, ValidationFailed)

    def test_orientation_calendar_seeded_once(self):
        first, _ = availability_service.get_or_create_orientation_calendar()
        second, _ = availability_service.get_or_create_orientation_calendar()
        assert first.id == second.id
        assert AdminCalendar.query.count() == 1
        slots = sorted(first.slots, key=lambda s: s.day_of_week)
        assert [(s.day_of_week, s.start_time, s.end_time) for s in slots] == [
            (1, "07:00", "08:00"),
            (4, "07:00", "08:00"),
        ]
        assert all(s.timezone == "America/Los_Angeles" for s in slots)


class TestSlotValidation:

    def test_end_before_start(self, calendar):
        _, error = availability_service.add_slot(
            calendar.id, day_of_week=1, start_time="11:00", end_time="10:00",
        )
        assert isinstance(error, ValidationFailed)
        assert "end_time" in error.details

    def test_bad_fields_reported_together(self, calendar):
        _, error = availability_service.add_slot(
            calendar.id, day_of_week=9, start_time="25:00", end_time="10:00",
            timezone="Mars/Olympus", max_bookings=0,
        )
        assert isinstance(error, ValidationFailed)
        assert set(error.details) == {
            "day_of_week", "start_time", "timezone", "max_bookings",
        }

    def test_default_timezone(self, calendar, app):
        slot = _slot(calendar.id, timezone=None)
        assert slot.timezone == app.config["DEFAULT_SLOT_TIMEZONE"]

    def test_one_off_slot_derives_day_of_week(self, calendar):
        slot = _slot(calendar.id, day_of_week=None, specific_date="2030-01-05")
        assert slot.specific_date == date(2030, 1, 5)
        assert slot.day_of_week == 6  # Saturday


class TestOccurrences:

    def test_weekly_slot_projected(self, calendar):
        slot = _slot(calendar.id, max_bookings=2)
        slots = _available(calendar.id, days=14)
        assert [s["date"] for s in slots] == ["2030-01-02", "2030-01-09"]
        first = slots[0]
        assert first["slot_id"] == slot.id
        assert first["day_of_week"] == 3
        assert first["remaining"] == 2
        assert first["starts_at"] == "2030-01-02T10:00:00+00:00"

    def test_started_occurrence_hidden(self, calendar):
        _slot(calendar.id, day_of_week=2)  # Tuesday 10:00, two hours ago
        assert [s["date"] for s in _available(calendar.id)] == ["2030-01-08"]

    def test_lookahead_zero_is_today_only(self, calendar):
        _slot(calendar.id, day_of_week=2, start_time="18:00", end_time="19:00")
        assert [s["date"] for s in _available(calendar.id, days=0)] == ["2030-01-01"]

    def test_slot_timezone_converted_to_utc(self, calendar):
        _slot(
            calendar.id, day_of_week=1, start_time="07:00", end_time="08:00",
            timezone="America/Los_Angeles",
        )
        (occurrence,) = _available(calendar.id)
        assert occurrence["date"] == "2030-01-07"
        assert occurrence["starts_at"] == "2030-01-07T15:00:00+00:00"
        assert occurrence["ends_at"] == "2030-01-07T16:00:00+00:00"

    def test_one_off_overrides_weekly_pattern(self, calendar):
        _slot(calendar.id)  # every Wednesday 10:00
        one_off = _slot(
            calendar.id, day_of_week=None, specific_date="2030-01-02",
            start_time="15:00", end_time="16:00",
        )
        slots = _available(calendar.id, days=8)
        assert [(s["date"], s["start_time"]) for s in slots] == [
            ("2030-01-02", "15:00"),
            ("2030-01-09", "10:00"),
        ]
        assert slots[0]["slot_id"] == one_off.id

    def test_inactive_one_off_does_not_override(self, calendar):
        _slot(calendar.id)
        one_off = _slot(
            calendar.id, day_of_week=None, specific_date="2030-01-02",
            start_time="15:00", end_time="16:00",
        )
        availability_service.deactivate_slot(one_off.id)
        slots = _available(calendar.id)
        assert [(s["date"], s["start_time"]) for s in slots] == [("2030-01-02", "10:00")]

    def test_inactive_calendar_has_no_occurrences(self, calendar, db_session):
        _slot(calendar.id)
        calendar.is_active = False
        db_session.commit()
        assert _available(calendar.id) == []


class TestReservation:

    def test_reserve_until_full(self, calendar):
        slot = _slot(calendar.id, max_bookings=2)

        first, error = availability_service.reserve_slot(
            calendar.id, slot.id, "2030-01-02", BOOKER, now=NOW,
        )
        assert error is None
        assert first["booking"].seat == 0
        assert first["booking"].booker_email == "jamie@example.com"
        assert first["booking"].status == "CONFIRMED"
        assert first["meeting_link"] == "https://meet.example.com/abc"

        second, _ = availability_service.reserve_slot(
            calendar.id, slot.id, date(2030, 1, 2), BOOKER, now=NOW,
        )
        assert second["booking"].seat == 1

        third, error = availability_service.reserve_slot(
            calendar.id, slot.id, "2030-01-02", BOOKER, now=NOW,
        )
        assert third is None
        assert isinstance(error, SlotUnavailable)
        assert CalendarBooking.query.count() == 2
        assert _available(calendar.id, days=6) == []

    def test_cancel_frees_seat(self, calendar):
        slot = _slot(calendar.id)
        result, _ = availability_service.reserve_slot(
            calendar.id, slot.id, "2030-01-02", BOOKER, now=NOW,
        )
        booking, error = availability_service.update_booking_status(
            result["booking"].id, "CANCELLED",
        )
        assert error is None
        assert booking.status == "CANCELLED"
        assert booking.seat is None

        again, error = availability_service.reserve_slot(
            calendar.id, slot.id, "2030-01-02", BOOKER, now=NOW,
        )
        assert error is None
        assert again["booking"].seat == 0

    def test_wrong_date(self, calendar):
        slot = _slot(calendar.id)
        _, error = availability_service.reserve_slot(
            calendar.id, slot.id, "2030-01-03", BOOKER, now=NOW,
        )
        assert isinstance(error, SlotUnavailable)

    def test_started_occurrence(self, calendar):
        slot = _slot(calendar.id, day_of_week=2)
        _, error = availability_service.reserve_slot(
            calendar.id, slot.id, "2030-01-01", BOOKER, now=NOW,
        )
        assert isinstance(error, SlotUnavailable)

    def test_weekly_slot_replaced_by_one_off(self, calendar):
        weekly = _slot(calendar.id)
        _slot(calendar.id, day_of_week=None, specific_date="2030-01-02",
              start_time="15:00", end_time="16:00")
        _, error = availability_service.reserve_slot(
            calendar.id, weekly.id, "2030-01-02", BOOKER, now=NOW,
        )
        assert isinstance(error, SlotUnavailable)

    def test_slot_of_another_calendar(self, calendar):
        other, _ = availability_service.create_calendar("Other", "other")
        slot = _slot(other.id)
        _, error = availability_service.reserve_slot(
            calendar.id, slot.id, "2030-01-02", BOOKER, now=NOW,
        )
        assert isinstance(error, SlotUnavailable)

    def test_deactivated_slot(self, calendar):
        slot = _slot(calendar.id)
        availability_service.deactivate_slot(slot.id)
        _, error = availability_service.reserve_slot(
            calendar.id, slot.id, "2030-01-02", BOOKER, now=NOW,
        )
        assert isinstance(error, SlotUnavailable)

    def test_booker_required(self, calendar):
        slot = _slot(calendar.id)
        _, error = availability_service.reserve_slot(
            calendar.id, slot.id, "2030-01-02", {"name": "Jamie"}, now=NOW,
        )
        assert isinstance(error, ValidationFailed)

    def test_approval_calendar_books_pending(self):
        cal, _ = availability_service.create_calendar(
            "Reviews", "reviews", requires_approval=True,
        )
        slot = _slot(cal.id)
        result, _ = availability_service.reserve_slot(
            cal.id, slot.id, "2030-01-02", BOOKER, now=NOW,
        )
        assert result["booking"].status == "PENDING"

    def test_lowering_capacity_keeps_bookings(self, calendar):
        slot = _slot(calendar.id, max_bookings=2)
        for _ in range(2):
            availability_service.reserve_slot(
                calendar.id, slot.id, "2030-01-02", BOOKER, now=NOW,
            )
        slot, error = availability_service.update_slot(slot.id, {"max_bookings": 1})
        assert error is None
        assert CalendarBooking.query.filter_by(status="CONFIRMED").count() == 2
        assert [s["date"] for s in _available(calendar.id, days=8)] == ["2030-01-09"]

    def test_lowered_capacity_counts_live_bookings(self, calendar):
        slot = _slot(calendar.id, max_bookings=3)
        bookings = [
            availability_service.reserve_slot(
                calendar.id, slot.id, "2030-01-02", BOOKER, now=NOW,
            )[0]["booking"].id
            for _ in range(3)
        ]
        availability_service.update_booking_status(bookings[0], "CANCELLED")
        availability_service.update_slot(slot.id, {"max_bookings": 2})

        # seat 0 is free again but seats 1 and 2 already fill the slot
        result, error = availability_service.reserve_slot(
            calendar.id, slot.id, "2030-01-02", BOOKER, now=NOW,
        )
        assert result is None
        assert isinstance(error, SlotUnavailable)
        live = CalendarBooking.query.filter(CalendarBooking.status != "CANCELLED")
        assert live.count() == 2

    @pytest.mark.parametrize("booking_date", [None, 20300102, ["2030-01-02"]])
    def test_booking_date_must_be_a_date(self, calendar, booking_date):
        slot = _slot(calendar.id)
        _, error = availability_service.reserve_slot(
            calendar.id, slot.id, booking_date, BOOKER, now=NOW,
        )
        assert isinstance(error, ValidationFailed)
        assert CalendarBooking.query.count() == 0

    def test_datetime_is_not_a_booking_date(self, calendar):
        slot = _slot(calendar.id)
        _, error = availability_service.reserve_slot(
            calendar.id, slot.id, datetime(2030, 1, 2, 10), BOOKER, now=NOW,
        )
        assert isinstance(error, ValidationFailed)


class TestBookingStatus:

    def _booking(self, calendar):
        slot = _slot(calendar.id)
        result, _ = availability_service.reserve_slot(
            calendar.id, slot.id, "2030-01-02", BOOKER, now=NOW,
        )
        return result["booking"]

    def test_complete_then_frozen(self, calendar, seed_data):
        booking = self._booking(calendar)
        booking, error = availability_service.update_booking_status(
            booking.id, "COMPLETED", actor_id=seed_data["admin_id"],
        )
        assert error is None
        assert booking.status == "COMPLETED"
        assert booking.seat == 0

        _, error = availability_service.update_booking_status(booking.id, "CANCELLED")
        assert isinstance(error, InvalidTransition)

    def test_unknown_status(self, calendar):
        booking = self._booking(calendar)
        _, error = availability_service.update_booking_status(booking.id, "LOST")
        assert isinstance(error, ValidationFailed)

    def test_list_bookings_filters(self, calendar):
        booking = self._booking(calendar)
        availability_service.update_booking_status(booking.id, "CANCELLED")
        rows, _ = availability_service.list_bookings(calendar.id, status="CONFIRMED")
        assert rows == []
        rows, _ = availability_service.list_bookings(
            calendar.id, start=date(2030, 1, 1), end=date(2030, 1, 31),
        )
        assert len(rows) == 1


# ══════════════════════════════════════════════
#  CONCURRENCY
# ══════════════════════════════════════════════

class TestConcurrentReservation:
    """Two transactions on separate connections race for one seat."""

    @pytest.fixture
    def single_seat(self, two_sessions):
        first, _ = two_sessions
        cal, error = availability_service.create_calendar(
            "Discovery Calls", "discovery", session=first,
        )
        assert error is None
        slot, error = availability_service.add_slot(
            cal.id, day_of_week=3, start_time="10:00", end_time="11:00",
            timezone="UTC", max_bookings=1, session=first,
        )
        assert error is None
        return cal.id, slot.id

    def _count(self, session):
        return session.execute(
            sa.select(sa.func.count(CalendarBooking.id))
        ).scalar_one()

    def test_other_booking_lands_before_the_count(self, two_sessions, single_seat):
        first, second = two_sessions
        calendar_id, slot_id = single_seat
        original = availability_service.occurrence_bounds
        other = []

        def bounds(slot, booking_date):
            if not other:
                other.append(availability_service.reserve_slot(
                    calendar_id, slot_id, booking_date, BOOKER, now=NOW,
                    session=second,
                ))
            return original(slot, booking_date)

        with patch.object(availability_service, "occurrence_bounds", side_effect=bounds):
            result, error = availability_service.reserve_slot(
                calendar_id, slot_id, "2030-01-02", BOOKER, now=NOW, session=first,
            )

        other_result, other_error = other[0]
        assert other_error is None
        assert other_result["booking"].seat == 0
        assert result is None
        assert isinstance(error, SlotUnavailable)
        assert self._count(first) == 1

    def test_other_booking_lands_before_the_insert(self, two_sessions, single_seat):
        first, second = two_sessions
        calendar_id, slot_id = single_seat
        other = []

        def book_elsewhere(session, flush_context, instances):
            if not other:
                other.append(availability_service.reserve_slot(
                    calendar_id, slot_id, "2030-01-02", BOOKER, now=NOW,
                    session=second,
                ))

        event.listen(first, "before_flush", book_elsewhere)
        try:
            result, error = availability_service.reserve_slot(
                calendar_id, slot_id, "2030-01-02", BOOKER, now=NOW, session=first,
            )
        finally:
            event.remove(first, "before_flush", book_elsewhere)

        _, other_error = other[0]
        assert other_error is None
        assert result is None
        assert isinstance(error, SlotUnavailable)
        assert "fully booked" in error.message
        assert self._count(first) == 1
