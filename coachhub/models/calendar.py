"""Calendar models (orientation and other bookable calendars).

- AdminCalendar: a bookable calendar with one meeting link shared by all
  of its slots.
- CalendarSlot: a weekly availability rule (day_of_week, 0 = Sunday) or,
  when specific_date is set, a one-off occurrence on that date. Times are
  "HH:MM" strings in the slot's own IANA timezone.
- CalendarBooking: a reservation of one seat of one slot occurrence.

Capacity: a live booking holds a seat number in range(max_bookings);
(slot_id, booking_date, seat) is unique, so two writers can never hold
the same seat. Cancelled bookings release their seat (seat = NULL).
"""

import uuid

from coachhub.extensions import db


class AdminCalendar(db.Model):
    __tablename__ = "admin_calendars"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name = db.Column(db.String(255), nullable=False)
    slug = db.Column(db.String(100), unique=True, nullable=False)
    description = db.Column(db.Text, nullable=True)
    meeting_link = db.Column(db.String(500), nullable=True)
    requires_approval = db.Column(db.Boolean, default=False, nullable=False)
    is_public_bookable = db.Column(db.Boolean, default=False, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    slots = db.relationship(
        "CalendarSlot", back_populates="calendar", lazy="dynamic"
    )
    bookings = db.relationship(
        "CalendarBooking", back_populates="calendar", lazy="dynamic"
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "description": self.description,
            "meeting_link": self.meeting_link,
            "requires_approval": self.requires_approval,
            "is_public_bookable": self.is_public_bookable,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<AdminCalendar {self.slug}>"


class CalendarSlot(db.Model):
    __tablename__ = "calendar_slots"

    DAY_NAMES = [
        "Sunday", "Monday", "Tuesday", "Wednesday",
        "Thursday", "Friday", "Saturday",
    ]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    calendar_id = db.Column(
        db.String(36), db.ForeignKey("admin_calendars.id"), nullable=False
    )
    day_of_week = db.Column(db.Integer, nullable=False)  # 0 = Sunday .. 6 = Saturday
    start_time = db.Column(db.String(5), nullable=False)  # "HH:MM"
    end_time = db.Column(db.String(5), nullable=False)
    timezone = db.Column(
        db.String(64), default="America/Los_Angeles", nullable=False
    )
    max_bookings = db.Column(db.Integer, default=1, nullable=False)
    specific_date = db.Column(db.Date, nullable=True)  # one-off occurrence
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    calendar = db.relationship("AdminCalendar", back_populates="slots")
    bookings = db.relationship(
        "CalendarBooking", back_populates="slot", lazy="dynamic"
    )

    @property
    def is_recurring(self):
        return self.specific_date is None

    def to_dict(self):
        return {
            "id": self.id,
            "calendar_id": self.calendar_id,
            "day_of_week": self.day_of_week,
            "day_name": self.DAY_NAMES[self.day_of_week],
            "start_time": self.start_time,
            "end_time": self.end_time,
            "timezone": self.timezone,
            "max_bookings": self.max_bookings,
            "specific_date": (
                self.specific_date.isoformat() if self.specific_date else None
            ),
            "is_recurring": self.is_recurring,
            "is_active": self.is_active,
        }

    def __repr__(self):
        return f"<CalendarSlot {self.DAY_NAMES[self.day_of_week]} {self.start_time}>"


class CalendarBooking(db.Model):
    __tablename__ = "calendar_bookings"
    __table_args__ = (
        db.UniqueConstraint(
            "slot_id", "booking_date", "seat", name="uq_booking_slot_date_seat"
        ),
    )

    STATUSES = ["PENDING", "CONFIRMED", "CANCELLED", "COMPLETED", "NO_SHOW"]

    # Statuses that hold capacity.
    LIVE_STATUSES = ["PENDING", "CONFIRMED", "COMPLETED", "NO_SHOW"]

    VALID_TRANSITIONS = {
        "PENDING": ["CONFIRMED", "CANCELLED"],
        "CONFIRMED": ["COMPLETED", "CANCELLED", "NO_SHOW"],
        "CANCELLED": [],
        "COMPLETED": [],
        "NO_SHOW": [],
    }

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    calendar_id = db.Column(
        db.String(36), db.ForeignKey("admin_calendars.id"), nullable=False
    )
    slot_id = db.Column(
        db.String(36), db.ForeignKey("calendar_slots.id"), nullable=False
    )
    booking_date = db.Column(db.Date, nullable=False, index=True)
    start_time = db.Column(db.String(5), nullable=False)
    end_time = db.Column(db.String(5), nullable=False)
    starts_at = db.Column(db.DateTime(timezone=True), nullable=False)  # UTC
    ends_at = db.Column(db.DateTime(timezone=True), nullable=False)
    seat = db.Column(db.Integer, nullable=True)  # NULL once cancelled
    status = db.Column(db.String(20), default="CONFIRMED", nullable=False)
    booker_name = db.Column(db.String(255), nullable=False)
    booker_email = db.Column(db.String(255), nullable=False)
    booker_phone = db.Column(db.String(50), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    prospect_id = db.Column(
        db.String(36), db.ForeignKey("prospects.id"), nullable=True
    )
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    calendar = db.relationship("AdminCalendar", back_populates="bookings")
    slot = db.relationship("CalendarSlot", back_populates="bookings")
    prospect = db.relationship("Prospect", back_populates="bookings")

    def to_dict(self):
        return {
            "id": self.id,
            "calendar_id": self.calendar_id,
            "slot_id": self.slot_id,
            "booking_date": self.booking_date.isoformat(),
            "start_time": self.start_time,
            "end_time": self.end_time,
            "starts_at": self.starts_at.isoformat() if self.starts_at else None,
            "status": self.status,
            "booker_name": self.booker_name,
            "booker_email": self.booker_email,
            "booker_phone": self.booker_phone,
            "notes": self.notes,
            "prospect_id": self.prospect_id,
        }

    def __repr__(self):
        return f"<CalendarBooking {self.booking_date} {self.start_time} ({self.status})>"
