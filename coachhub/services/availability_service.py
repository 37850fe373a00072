"""Availability service — calendars, slots, occurrences and bookings.

Projects weekly CalendarSlot rules onto concrete dates, subtracts live
bookings, and reserves seats atomically:

- the slot row is locked (SELECT ... FOR UPDATE where the database
  supports it) while capacity is checked,
- each live booking holds a seat number below max_bookings, and
  (slot_id, booking_date, seat) is unique, so the losing writer of a race
  fails on flush and sees SlotUnavailable.

A one-off slot (specific_date set) replaces every recurring occurrence of
its calendar on that date.

Slot times are wall-clock times in the slot's IANA timezone; all
comparisons against "now" happen in UTC.
"""

import logging
import re
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import sqlalchemy as sa
from flask import current_app
from sqlalchemy.exc import IntegrityError

from coachhub.errors import (
    InvalidTransition,
    NotFound,
    SlotUnavailable,
    ValidationFailed,
)
from coachhub.models.audit import AuditEvent
from coachhub.models.calendar import AdminCalendar, CalendarBooking, CalendarSlot
from coachhub.services.unit_of_work import unit_of_work
from coachhub.utils import as_utc, sanitize, utcnow

logger = logging.getLogger(__name__)

_HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

ORIENTATION_SLOTS = [
    # (day_of_week, start, end): Mondays and Thursdays, Pacific time
    (1, "07:00", "08:00"),
    (4, "07:00", "08:00"),
]


# ──────────────────────────────────────────────
# Helpers
# ──────────────────────────────────────────────

def weekday_index(on_date):
    """0 = Sunday .. 6 = Saturday."""
    return (on_date.weekday() + 1) % 7


def _parse_time(value):
    match = _HHMM.match(value or "")
    if not match:
        raise ValueError(f"Invalid time '{value}', expected HH:MM.")
    return time(int(match.group(1)), int(match.group(2)))


def occurrence_bounds(slot, on_date):
    """UTC (starts_at, ends_at) of ``slot`` on ``on_date``."""
    tz = ZoneInfo(slot.timezone)
    starts_at = datetime.combine(on_date, _parse_time(slot.start_time), tzinfo=tz)
    ends_at = datetime.combine(on_date, _parse_time(slot.end_time), tzinfo=tz)
    return starts_at.astimezone(timezone.utc), ends_at.astimezone(timezone.utc)


def _one_off_dates(session, calendar_id):
    """Dates on which an active one-off slot overrides the weekly pattern."""
    rows = session.execute(
        sa.select(CalendarSlot.specific_date).where(
            CalendarSlot.calendar_id == calendar_id,
            CalendarSlot.is_active.is_(True),
            CalendarSlot.specific_date.isnot(None),
        )
    ).scalars()
    return set(rows)


def _occurs_on(slot, on_date, override_dates):
    if not slot.is_active:
        return False
    if slot.specific_date is not None:
        return slot.specific_date == on_date
    return slot.day_of_week == weekday_index(on_date) and on_date not in override_dates


def _live_counts(session, calendar_id, first_date, last_date):
    """{(slot_id, booking_date): live booking count} for a date range."""
    rows = session.execute(
        sa.select(
            CalendarBooking.slot_id,
            CalendarBooking.booking_date,
            sa.func.count(CalendarBooking.id),
        )
        .where(
            CalendarBooking.calendar_id == calendar_id,
            CalendarBooking.booking_date >= first_date,
            CalendarBooking.booking_date <= last_date,
            CalendarBooking.status.in_(CalendarBooking.LIVE_STATUSES),
        )
        .group_by(CalendarBooking.slot_id, CalendarBooking.booking_date)
    )
    return {(slot_id, booking_date): count for slot_id, booking_date, count in rows}


def _get_calendar(session, calendar_id):
    calendar = session.get(AdminCalendar, calendar_id)
    if calendar is None:
        raise NotFound("Calendar not found.")
    return calendar


def _validate_slot_fields(data, partial=False):
    """Validate slot fields; returns the cleaned subset of ``data``.

    Raises:
        ValidationFailed: with per-field messages in ``details``.
    """
    errors = {}
    cleaned = {}

    if "specific_date" in data:
        value = data["specific_date"]
        if value in (None, ""):
            cleaned["specific_date"] = None
        elif isinstance(value, date):
            cleaned["specific_date"] = value
        else:
            try:
                cleaned["specific_date"] = date.fromisoformat(str(value))
            except ValueError:
                errors["specific_date"] = "Must be a date (YYYY-MM-DD)."

    if "day_of_week" in data:
        value = data["day_of_week"]
        if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 6:
            errors["day_of_week"] = "Must be an integer from 0 (Sunday) to 6 (Saturday)."
        else:
            cleaned["day_of_week"] = value
    elif cleaned.get("specific_date"):
        cleaned["day_of_week"] = weekday_index(cleaned["specific_date"])
    elif not partial:
        errors["day_of_week"] = "Day of week is required."

    for field in ("start_time", "end_time"):
        if field in data:
            try:
                _parse_time(data[field])
                cleaned[field] = data[field]
            except ValueError as e:
                errors[field] = str(e)
        elif not partial:
            errors[field] = "Required."

    if "timezone" in data:
        tz_name = data["timezone"] or current_app.config["DEFAULT_SLOT_TIMEZONE"]
        try:
            ZoneInfo(tz_name)
            cleaned["timezone"] = tz_name
        except (ZoneInfoNotFoundError, ValueError):
            errors["timezone"] = f"Unknown timezone '{tz_name}'."

    if "max_bookings" in data:
        value = data["max_bookings"]
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            errors["max_bookings"] = "Capacity must be at least 1."
        else:
            cleaned["max_bookings"] = value

    if errors:
        raise ValidationFailed("Invalid slot.", details=errors)
    return cleaned


def _check_times(slot_like):
    if _parse_time(slot_like["end_time"]) <= _parse_time(slot_like["start_time"]):
        raise ValidationFailed(
            "Invalid slot.", details={"end_time": "End time must be after start time."}
        )


# ──────────────────────────────────────────────
# Calendars
# ──────────────────────────────────────────────

@unit_of_work
def create_calendar(name, slug, meeting_link=None, description=None,
                    requires_approval=False, is_public_bookable=False,
                    session=None):
    """Create a bookable calendar.

    Raises:
        ValidationFailed: if name/slug are missing or the slug is taken.
    """
    name = sanitize(name)
    slug = (slug or "").strip().lower()
    if not name or not re.match(r"^[a-z0-9-]+$", slug):
        raise ValidationFailed(
            "Name and a slug of lowercase letters, digits and dashes are required."
        )
    if session.execute(
        sa.select(AdminCalendar.id).where(AdminCalendar.slug == slug)
    ).first():
        raise ValidationFailed(f"A calendar with slug '{slug}' already exists.")

    calendar = AdminCalendar(
        name=name,
        slug=slug,
        description=sanitize(description),
        meeting_link=_clean_link(meeting_link),
        requires_approval=bool(requires_approval),
        is_public_bookable=bool(is_public_bookable),
    )
    session.add(calendar)
    session.flush()
    return calendar


@unit_of_work
def get_or_create_orientation_calendar(session=None):
    """Return the orientation calendar, seeding it on first use.

    Seeded with one-hour slots on Mondays and Thursdays at 07:00
    America/Los_Angeles, one prospect per slot, auto-confirmed.
    """
    slug = current_app.config["ORIENTATION_CALENDAR_SLUG"]
    calendar = session.execute(
        sa.select(AdminCalendar).where(AdminCalendar.slug == slug)
    ).scalar_one_or_none()
    if calendar is not None:
        return calendar

    calendar = AdminCalendar(
        name="Coach Orientation",
        slug=slug,
        description="Orientation sessions for prospective coaches.",
        requires_approval=False,
        is_public_bookable=False,
    )
    session.add(calendar)
    session.flush()
    for dow, start, end in ORIENTATION_SLOTS:
        session.add(CalendarSlot(
            calendar_id=calendar.id,
            day_of_week=dow,
            start_time=start,
            end_time=end,
            timezone="America/Los_Angeles",
            max_bookings=1,
        ))
    session.flush()
    logger.info(f"Seeded orientation calendar {calendar.id}")
    return calendar


def _clean_link(link):
    link = (link or "").strip()
    if not link:
        return None
    if not link.startswith(("https://", "http://")):
        raise ValidationFailed("Meeting link must be an http(s) URL.")
    return link


@unit_of_work
def update_meeting_link(calendar_id, meeting_link, session=None):
    """Set the single meeting link shared by every slot of a calendar."""
    calendar = _get_calendar(session, calendar_id)
    calendar.meeting_link = _clean_link(meeting_link)
    session.flush()
    return calendar


# ──────────────────────────────────────────────
# Slots
# ──────────────────────────────────────────────

@unit_of_work
def add_slot(calendar_id, day_of_week=None, start_time=None, end_time=None,
             timezone=None, max_bookings=1, specific_date=None, session=None):
    """Add a weekly slot, or a one-off slot when ``specific_date`` is given.

    For one-off slots day_of_week is derived from the date.

    Raises:
        NotFound: unknown calendar.
        ValidationFailed: invalid day/time/timezone/capacity.
    """
    _get_calendar(session, calendar_id)
    data = {
        "start_time": start_time,
        "end_time": end_time,
        "timezone": timezone,
        "max_bookings": max_bookings,
        "specific_date": specific_date,
    }
    if day_of_week is not None:
        data["day_of_week"] = day_of_week
    cleaned = _validate_slot_fields(data)
    _check_times(cleaned)
    if cleaned.get("specific_date") is not None:
        cleaned["day_of_week"] = weekday_index(cleaned["specific_date"])

    slot = CalendarSlot(calendar_id=calendar_id, **cleaned)
    session.add(slot)
    session.flush()
    return slot


@unit_of_work
def update_slot(slot_id, changes, session=None):
    """Apply a partial update to a slot.

    Capacity changes never evict existing bookings; a lowered capacity
    only stops new reservations until bookings drop below it.
    """
    slot = session.get(CalendarSlot, slot_id)
    if slot is None:
        raise NotFound("Slot not found.")

    allowed = {
        k: v for k, v in changes.items()
        if k in ("day_of_week", "start_time", "end_time", "timezone",
                 "max_bookings", "specific_date", "is_active")
    }
    cleaned = _validate_slot_fields(allowed, partial=True)
    merged = {
        "start_time": cleaned.get("start_time", slot.start_time),
        "end_time": cleaned.get("end_time", slot.end_time),
    }
    _check_times(merged)

    for key, value in cleaned.items():
        setattr(slot, key, value)
    if "is_active" in allowed:
        slot.is_active = bool(allowed["is_active"])
    if slot.specific_date is not None:
        slot.day_of_week = weekday_index(slot.specific_date)
    session.flush()
    return slot


@unit_of_work
def deactivate_slot(slot_id, session=None):
    """Stop offering a slot. Existing bookings are kept."""
    slot = session.get(CalendarSlot, slot_id)
    if slot is None:
        raise NotFound("Slot not found.")
    slot.is_active = False
    session.flush()
    return slot


# ──────────────────────────────────────────────
# Occurrences
# ──────────────────────────────────────────────

@unit_of_work
def list_available_slots(calendar_id, lookahead_days=None, now=None, session=None):
    """Concrete (date, slot) occurrences with free capacity.

    Each slot is projected over [today, today + lookahead_days], where
    "today" is the current date in the slot's own timezone. Occurrences
    that already started are left out.

    Returns:
        dict: ``calendar_id``, ``meeting_link`` and ``slots`` — a list of
        occurrence dicts ordered by date, then start instant.
    """
    calendar = _get_calendar(session, calendar_id)
    if lookahead_days is None:
        lookahead_days = current_app.config["ORIENTATION_LOOKAHEAD_DAYS"]
    lookahead_days = max(0, int(lookahead_days))
    now = as_utc(now) or utcnow()

    result = {
        "calendar_id": calendar.id,
        "meeting_link": calendar.meeting_link,
        "slots": [],
    }
    if not calendar.is_active:
        return result

    slots = session.execute(
        sa.select(CalendarSlot).where(
            CalendarSlot.calendar_id == calendar.id,
            CalendarSlot.is_active.is_(True),
        )
    ).scalars().all()
    if not slots:
        return result

    # Slot-local "today" can be a day either side of the UTC date.
    utc_today = now.date()
    counts = _live_counts(
        session,
        calendar.id,
        utc_today - timedelta(days=1),
        utc_today + timedelta(days=lookahead_days + 1),
    )
    overrides = {s.specific_date for s in slots if s.specific_date is not None}

    occurrences = []
    for slot in slots:
        local_today = now.astimezone(ZoneInfo(slot.timezone)).date()
        for offset in range(lookahead_days + 1):
            on_date = local_today + timedelta(days=offset)
            if not _occurs_on(slot, on_date, overrides):
                continue
            starts_at, ends_at = occurrence_bounds(slot, on_date)
            if starts_at <= now:
                continue
            remaining = slot.max_bookings - counts.get((slot.id, on_date), 0)
            if remaining <= 0:
                continue
            occurrences.append({
                "date": on_date.isoformat(),
                "day_of_week": weekday_index(on_date),
                "slot_id": slot.id,
                "start_time": slot.start_time,
                "end_time": slot.end_time,
                "timezone": slot.timezone,
                "starts_at": starts_at.isoformat(),
                "ends_at": ends_at.isoformat(),
                "remaining": remaining,
            })

    occurrences.sort(key=lambda o: (o["date"], o["starts_at"]))
    result["slots"] = occurrences
    return result


@unit_of_work
def reserve_slot(calendar_id, slot_id, booking_date, booker, prospect_id=None,
                 status=None, now=None, session=None):
    """Atomically reserve one seat of a slot occurrence.

    Args:
        calendar_id: Calendar the slot must belong to.
        slot_id: CalendarSlot UUID.
        booking_date: ``date`` of the occurrence (slot-local).
        booker: dict with ``name``, ``email`` and optional ``phone``/``notes``.
        prospect_id: Optional prospect to link the booking to.
        status: Initial booking status; defaults to PENDING when the
            calendar requires approval, CONFIRMED otherwise.

    Returns:
        dict: ``booking`` (CalendarBooking) and ``meeting_link``.

    Raises:
        SlotUnavailable: the slot is gone, does not occur on that date,
            has started, or has no free seat.
    """
    now = as_utc(now) or utcnow()
    if isinstance(booking_date, str):
        try:
            booking_date = date.fromisoformat(booking_date)
        except ValueError:
            raise ValidationFailed("Invalid booking date.")
    if not isinstance(booking_date, date) or isinstance(booking_date, datetime):
        raise ValidationFailed("Invalid booking date.")

    booker = booker or {}
    name = sanitize(booker.get("name"))
    email = (booker.get("email") or "").strip().lower()
    if not name or not email:
        raise ValidationFailed("Booker name and email are required.")

    slot = session.execute(
        sa.select(CalendarSlot)
        .where(CalendarSlot.id == slot_id)
        .with_for_update()
    ).scalar_one_or_none()
    if slot is None or slot.calendar_id != calendar_id or not slot.is_active:
        raise SlotUnavailable("This slot no longer exists.")

    calendar = _get_calendar(session, calendar_id)
    if not calendar.is_active:
        raise SlotUnavailable("This calendar is not accepting bookings.")

    if not _occurs_on(slot, booking_date, _one_off_dates(session, calendar_id)):
        raise SlotUnavailable("This slot does not occur on that date.")

    starts_at, ends_at = occurrence_bounds(slot, booking_date)
    if starts_at <= now:
        raise SlotUnavailable("This slot has already started.")

    # Seats above a lowered max_bookings stay held, so count live bookings too.
    live = session.execute(
        sa.select(sa.func.count(CalendarBooking.id)).where(
            CalendarBooking.slot_id == slot.id,
            CalendarBooking.booking_date == booking_date,
            CalendarBooking.status.in_(CalendarBooking.LIVE_STATUSES),
        )
    ).scalar_one()
    if live >= slot.max_bookings:
        raise SlotUnavailable("This slot is fully booked.")

    taken = set(session.execute(
        sa.select(CalendarBooking.seat).where(
            CalendarBooking.slot_id == slot.id,
            CalendarBooking.booking_date == booking_date,
            CalendarBooking.seat.isnot(None),
        )
    ).scalars())
    free = [seat for seat in range(slot.max_bookings) if seat not in taken]
    if not free:
        raise SlotUnavailable("This slot is fully booked.")

    if status is None:
        status = "PENDING" if calendar.requires_approval else "CONFIRMED"

    booking = CalendarBooking(
        calendar_id=calendar.id,
        slot_id=slot.id,
        booking_date=booking_date,
        start_time=slot.start_time,
        end_time=slot.end_time,
        starts_at=starts_at,
        ends_at=ends_at,
        seat=free[0],
        status=status,
        booker_name=name,
        booker_email=email,
        booker_phone=sanitize(booker.get("phone")),
        notes=sanitize(booker.get("notes")),
        prospect_id=prospect_id,
    )
    session.add(booking)
    try:
        session.flush()
    except IntegrityError:
        # Another transaction took the seat between our read and write.
        raise SlotUnavailable("This slot is fully booked.")

    logger.info(
        f"Reserved slot {slot.id} on {booking_date} seat {booking.seat} "
        f"(booking {booking.id})"
    )
    return {"booking": booking, "meeting_link": calendar.meeting_link}


# ──────────────────────────────────────────────
# Bookings
# ──────────────────────────────────────────────

@unit_of_work
def list_bookings(calendar_id, start=None, end=None, status=None, session=None):
    """Bookings of a calendar, optionally bounded by date and status."""
    _get_calendar(session, calendar_id)
    query = sa.select(CalendarBooking).where(CalendarBooking.calendar_id == calendar_id)
    if start is not None:
        query = query.where(CalendarBooking.booking_date >= start)
    if end is not None:
        query = query.where(CalendarBooking.booking_date <= end)
    if status:
        query = query.where(CalendarBooking.status == status)
    query = query.order_by(CalendarBooking.booking_date, CalendarBooking.starts_at)
    return session.execute(query).scalars().all()


@unit_of_work
def update_booking_status(booking_id, status, actor_id=None, session=None):
    """Move a booking along PENDING -> CONFIRMED -> COMPLETED/NO_SHOW.

    Cancelling (from PENDING or CONFIRMED) releases the seat.

    Raises:
        NotFound: unknown booking.
        InvalidTransition: the move is not allowed from the current status.
    """
    booking = session.get(CalendarBooking, booking_id)
    if booking is None:
        raise NotFound("Booking not found.")
    if status not in CalendarBooking.STATUSES:
        raise ValidationFailed(f"Invalid booking status '{status}'.")

    allowed = CalendarBooking.VALID_TRANSITIONS.get(booking.status, [])
    if status not in allowed:
        raise InvalidTransition(
            f"Cannot move a booking from {booking.status} to {status}."
        )

    old_status = booking.status
    result = session.execute(
        sa.update(CalendarBooking)
        .where(CalendarBooking.id == booking.id, CalendarBooking.status == old_status)
        .values(
            status=status,
            seat=None if status == "CANCELLED" else CalendarBooking.seat,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise InvalidTransition("The booking was changed by someone else.")
    session.expire(booking)

    session.add(AuditEvent(
        actor_user_id=actor_id,
        entity_type="booking",
        entity_id=booking.id,
        action=f"booking.{status.lower()}",
        metadata_={"old_status": old_status, "new_status": status},
    ))
    session.flush()
    return booking
