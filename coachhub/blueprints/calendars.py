"""Calendars blueprint — /admin/calendars/*

Orientation calendar, slot authoring, availability and bookings.
All routes protected by @admin_required decorator.

Route Map:
  GET    /admin/calendars                              — List calendars
  POST   /admin/calendars                              — Create calendar
  GET    /admin/calendars/orientation                  — Orientation calendar (seeded on first use)
  GET    /admin/calendars/orientation/available        — Open orientation occurrences
  GET    /admin/calendars/<id>                         — Calendar + slots
  PUT    /admin/calendars/<id>/meeting-link            — Set shared meeting link
  POST   /admin/calendars/<id>/slots                   — Add slot
  PATCH  /admin/calendars/slots/<slot_id>              — Update slot
  DELETE /admin/calendars/slots/<slot_id>              — Deactivate slot
  GET    /admin/calendars/<id>/available               — Open occurrences (?days=)
  GET    /admin/calendars/<id>/bookings                — Bookings (?start=&end=&status=)
  POST   /admin/calendars/bookings/<booking_id>/status — Change booking status
"""

import logging
from datetime import date

from flask import Blueprint, jsonify, request
from flask_login import current_user

from coachhub.decorators import admin_required
from coachhub.errors import ValidationFailed
from coachhub.models.calendar import AdminCalendar
from coachhub.services import availability_service

logger = logging.getLogger(__name__)

calendars_bp = Blueprint("calendars", __name__, url_prefix="/admin/calendars")


def _body():
    return request.get_json(silent=True) or {}


def _calendar_detail(calendar):
    data = calendar.to_dict()
    data["slots"] = [
        s.to_dict() for s in calendar.slots.order_by("day_of_week", "start_time")
    ]
    return data


def _days_arg():
    days = request.args.get("days", type=int)
    return days if days is not None and days >= 0 else None


def _date_arg(name):
    value = request.args.get(name)
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise ValidationFailed(f"Invalid date for '{name}', expected YYYY-MM-DD.")


# ──────────────────────────────────────────────
# Calendars
# ──────────────────────────────────────────────

@calendars_bp.route("")
@admin_required
def list_calendars():
    calendars = AdminCalendar.query.order_by(AdminCalendar.name).all()
    return jsonify(ok=True, calendars=[c.to_dict() for c in calendars])


@calendars_bp.route("", methods=["POST"])
@admin_required
def create_calendar():
    data = _body()
    calendar, error = availability_service.create_calendar(
        data.get("name"),
        data.get("slug"),
        meeting_link=data.get("meeting_link"),
        description=data.get("description"),
        requires_approval=data.get("requires_approval", False),
        is_public_bookable=data.get("is_public_bookable", False),
    )
    if error:
        return error.to_response()
    return jsonify(ok=True, calendar=_calendar_detail(calendar)), 201


@calendars_bp.route("/orientation")
@admin_required
def orientation_calendar():
    calendar, error = availability_service.get_or_create_orientation_calendar()
    if error:
        return error.to_response()
    return jsonify(ok=True, calendar=_calendar_detail(calendar))


@calendars_bp.route("/orientation/available")
@admin_required
def orientation_available():
    """Open orientation occurrences for the scheduling dialog."""
    calendar, error = availability_service.get_or_create_orientation_calendar()
    if error:
        return error.to_response()
    result, error = availability_service.list_available_slots(
        calendar.id, lookahead_days=_days_arg(),
    )
    if error:
        return error.to_response()
    return jsonify(ok=True, **result)


@calendars_bp.route("/<calendar_id>")
@admin_required
def calendar_detail(calendar_id):
    calendar = AdminCalendar.query.get_or_404(calendar_id)
    return jsonify(ok=True, calendar=_calendar_detail(calendar))


@calendars_bp.route("/<calendar_id>/meeting-link", methods=["PUT"])
@admin_required
def meeting_link(calendar_id):
    calendar, error = availability_service.update_meeting_link(
        calendar_id, _body().get("meeting_link"),
    )
    if error:
        return error.to_response()
    return jsonify(ok=True, calendar=calendar.to_dict())


# ──────────────────────────────────────────────
# Slots
# ──────────────────────────────────────────────

@calendars_bp.route("/<calendar_id>/slots", methods=["POST"])
@admin_required
def add_slot(calendar_id):
    data = _body()
    slot, error = availability_service.add_slot(
        calendar_id,
        day_of_week=data.get("day_of_week"),
        start_time=data.get("start_time"),
        end_time=data.get("end_time"),
        timezone=data.get("timezone"),
        max_bookings=data.get("max_bookings", 1),
        specific_date=data.get("specific_date"),
    )
    if error:
        return error.to_response()
    return jsonify(ok=True, slot=slot.to_dict()), 201


@calendars_bp.route("/slots/<slot_id>", methods=["PATCH"])
@admin_required
def update_slot(slot_id):
    slot, error = availability_service.update_slot(slot_id, _body())
    if error:
        return error.to_response()
    return jsonify(ok=True, slot=slot.to_dict())


@calendars_bp.route("/slots/<slot_id>", methods=["DELETE"])
@admin_required
def deactivate_slot(slot_id):
    slot, error = availability_service.deactivate_slot(slot_id)
    if error:
        return error.to_response()
    return jsonify(ok=True, slot=slot.to_dict())


# ──────────────────────────────────────────────
# Availability & bookings
# ──────────────────────────────────────────────

@calendars_bp.route("/<calendar_id>/available")
@admin_required
def available(calendar_id):
    result, error = availability_service.list_available_slots(
        calendar_id, lookahead_days=_days_arg(),
    )
    if error:
        return error.to_response()
    return jsonify(ok=True, **result)


@calendars_bp.route("/<calendar_id>/bookings")
@admin_required
def bookings(calendar_id):
    try:
        start = _date_arg("start")
        end = _date_arg("end")
    except ValidationFailed as e:
        return e.to_response()
    rows, error = availability_service.list_bookings(
        calendar_id, start=start, end=end, status=request.args.get("status"),
    )
    if error:
        return error.to_response()
    return jsonify(ok=True, bookings=[b.to_dict() for b in rows])


@calendars_bp.route("/bookings/<booking_id>/status", methods=["POST"])
@admin_required
def booking_status(booking_id):
    booking, error = availability_service.update_booking_status(
        booking_id, _body().get("status"), actor_id=current_user.id,
    )
    if error:
        return error.to_response()
    return jsonify(ok=True, booking=booking.to_dict())
