"""Prospect model (coach onboarding pipeline).

A prospect is a candidate coach moving through the onboarding pipeline:

    ASSESSMENT_PENDING -> ASSESSMENT_COMPLETED -> ORIENTATION_SCHEDULED
    -> ORIENTATION_COMPLETED -> BUSINESS_FORM_PENDING -> BUSINESS_FORM_SUBMITTED
    -> INTERVIEW_SCHEDULED -> APPROVED | REJECTED
    APPROVED -> ACCEPTANCE_PENDING -> PAYMENT_PENDING -> PAYMENT_COMPLETED
    -> ACCOUNT_CREATED

Status only ever changes through pipeline_service, which applies the
TRANSITIONS table below. REJECTED and ACCOUNT_CREATED are terminal.

Token fields are bearer credentials for the unauthenticated external
forms. assessment_token always exists; business_form_token and
acceptance_token are NULL until issued, and never change once issued.
"""

import secrets
import uuid

from coachhub.extensions import db


def generate_form_token(prefix):
    """Unguessable, URL-safe token for one external form."""
    return f"{prefix}_{secrets.token_urlsafe(32)}"


# -- Pipeline statuses, in pipeline order --
PIPELINE_STATUSES = [
    "ASSESSMENT_PENDING",
    "ASSESSMENT_COMPLETED",
    "ORIENTATION_SCHEDULED",
    "ORIENTATION_COMPLETED",
    "BUSINESS_FORM_PENDING",
    "BUSINESS_FORM_SUBMITTED",
    "INTERVIEW_SCHEDULED",
    "INTERVIEW_COMPLETED",
    "APPROVED",
    "REJECTED",
    "ACCEPTANCE_PENDING",
    "PAYMENT_PENDING",
    "PAYMENT_COMPLETED",
    "ACCOUNT_CREATED",
]

TERMINAL_STATUSES = ["REJECTED", "ACCOUNT_CREATED"]


class Prospect(db.Model):
    __tablename__ = "prospects"

    STATUSES = PIPELINE_STATUSES
    TERMINAL_STATUSES = TERMINAL_STATUSES

    # Statuses a prospect may be created in.
    ENTRY_STATUSES = ["ASSESSMENT_PENDING", "ASSESSMENT_COMPLETED"]

    # -- operation -> (source statuses, destination statuses) --
    # Enforced centrally in pipeline_service._advance().
    TRANSITIONS = {
        "complete_assessment": (
            ["ASSESSMENT_PENDING"], ["ASSESSMENT_COMPLETED"],
        ),
        "schedule_orientation": (
            ["ASSESSMENT_COMPLETED"], ["ORIENTATION_SCHEDULED"],
        ),
        "complete_orientation": (
            ["ORIENTATION_SCHEDULED"], ["ORIENTATION_COMPLETED"],
        ),
        "generate_business_form_token": (
            ["ORIENTATION_COMPLETED"], ["BUSINESS_FORM_PENDING"],
        ),
        "submit_business_form": (
            ["BUSINESS_FORM_PENDING"], ["BUSINESS_FORM_SUBMITTED"],
        ),
        "schedule_interview": (
            ["BUSINESS_FORM_SUBMITTED"], ["INTERVIEW_SCHEDULED"],
        ),
        "complete_interview": (
            ["INTERVIEW_SCHEDULED"], ["APPROVED", "REJECTED"],
        ),
        "generate_acceptance_token": (
            ["APPROVED"], ["ACCEPTANCE_PENDING"],
        ),
        "accept_terms": (
            ["ACCEPTANCE_PENDING"], ["PAYMENT_PENDING"],
        ),
        "complete_payment": (
            ["PAYMENT_PENDING"], ["PAYMENT_COMPLETED"],
        ),
        "create_coach_account": (
            ["PAYMENT_COMPLETED"], ["ACCOUNT_CREATED"],
        ),
        "reject": (
            [s for s in PIPELINE_STATUSES if s not in TERMINAL_STATUSES], ["REJECTED"],
        ),
    }

    INTERVIEW_RESULTS = ["APPROVED", "REJECTED"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False)
    phone = db.Column(db.String(50), nullable=True)
    phone_country_code = db.Column(db.String(8), nullable=True)
    referrer_name = db.Column(db.String(255), nullable=True)
    status = db.Column(
        db.String(50), default="ASSESSMENT_PENDING", nullable=False, index=True
    )

    # --- External form tokens ---
    assessment_token = db.Column(
        db.String(64),
        unique=True,
        nullable=False,
        default=lambda: generate_form_token("as"),
    )
    business_form_token = db.Column(db.String(64), unique=True, nullable=True)
    acceptance_token = db.Column(db.String(64), unique=True, nullable=True)

    # --- Assessment ---
    assessment_survey_id = db.Column(db.String(36), nullable=True)
    assessment_submission_id = db.Column(db.String(36), nullable=True)
    assessment_completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # --- Orientation ---
    orientation_scheduled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    orientation_completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    orientation_notes = db.Column(db.Text, nullable=True)

    # --- Business development form (filled in by the prospect) ---
    company_name = db.Column(db.String(255), nullable=True)
    bio = db.Column(db.Text, nullable=True)
    vision_statement = db.Column(db.Text, nullable=True)
    mission_statement = db.Column(db.Text, nullable=True)
    services_interested = db.Column(db.JSON, nullable=True)  # list of str
    proposed_cost_of_services = db.Column(db.Text, nullable=True)
    business_form_submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # --- Interview ---
    interview_scheduled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    interview_completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    interview_notes = db.Column(db.Text, nullable=True)
    interview_result = db.Column(db.String(20), nullable=True)  # APPROVED | REJECTED

    # --- Acceptance letter ---
    terms_accepted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    privacy_accepted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    non_refund_acknowledged_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # --- Account (set once, by create_coach_from_prospect) ---
    coach_profile_id = db.Column(
        db.String(36),
        db.ForeignKey("coach_profiles.id"),
        unique=True,
        nullable=True,
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
    status_history = db.relationship(
        "ProspectStatusHistory",
        back_populates="prospect",
        order_by="ProspectStatusHistory.sequence",
        lazy="dynamic",
    )
    payment = db.relationship(
        "ProspectPayment", back_populates="prospect", uselist=False
    )
    coach_profile = db.relationship("CoachProfile", foreign_keys=[coach_profile_id])
    bookings = db.relationship(
        "CalendarBooking", back_populates="prospect", lazy="dynamic"
    )

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def is_terminal(self):
        return self.status in self.TERMINAL_STATUSES

    @property
    def allowed_operations(self):
        """Pipeline operations whose source state is the current status."""
        return [
            op for op, (sources, _) in self.TRANSITIONS.items()
            if self.status in sources
        ]

    def to_dict(self):
        def iso(value):
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "phone": self.phone,
            "referrer_name": self.referrer_name,
            "status": self.status,
            "allowed_operations": self.allowed_operations,
            "company_name": self.company_name,
            "bio": self.bio,
            "vision_statement": self.vision_statement,
            "mission_statement": self.mission_statement,
            "services_interested": self.services_interested or [],
            "proposed_cost_of_services": self.proposed_cost_of_services,
            "has_business_form_token": self.business_form_token is not None,
            "has_acceptance_token": self.acceptance_token is not None,
            "assessment_completed_at": iso(self.assessment_completed_at),
            "orientation_scheduled_at": iso(self.orientation_scheduled_at),
            "orientation_completed_at": iso(self.orientation_completed_at),
            "orientation_notes": self.orientation_notes,
            "business_form_submitted_at": iso(self.business_form_submitted_at),
            "interview_scheduled_at": iso(self.interview_scheduled_at),
            "interview_completed_at": iso(self.interview_completed_at),
            "interview_notes": self.interview_notes,
            "interview_result": self.interview_result,
            "terms_accepted_at": iso(self.terms_accepted_at),
            "payment_status": self.payment.status if self.payment else None,
            "coach_profile_id": self.coach_profile_id,
            "created_at": iso(self.created_at),
        }

    def __repr__(self):
        return f"<Prospect {self.email} ({self.status})>"
