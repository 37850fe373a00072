"""Pipeline service — the prospect onboarding state machine.

Every status change goes through ``_advance()``, which:

1. looks the operation up in ``Prospect.TRANSITIONS``,
2. writes the new status with a conditional UPDATE
   (``WHERE id = ? AND status = <observed status>``) so a concurrent
   writer that already moved the prospect makes this one fail with
   InvalidTransition instead of overwriting it,
3. appends one ProspectStatusHistory row and one AuditEvent.

Public operations are wrapped in ``unit_of_work``: they return
``(value, None)`` on success and ``(None, OnboardingError)`` on an
expected failure, with the transaction rolled back.

Tokens are issued at most once. Issuing writes
``COALESCE(token, <new token>)`` in the same conditional UPDATE as the
status change, and calling a token operation again after issuance
returns the existing token without touching anything.
"""

import logging

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError

from coachhub.errors import (
    AlreadyLinked,
    DuplicateProspect,
    InvalidTransition,
    NotFound,
    ValidationFailed,
)
from coachhub.models.audit import AuditEvent
from coachhub.models.prospect import Prospect, generate_form_token
from coachhub.models.prospect_history import ProspectStatusHistory
from coachhub.services import account_service, availability_service
from coachhub.services.unit_of_work import unit_of_work
from coachhub.utils import as_utc, sanitize, utcnow

logger = logging.getLogger(__name__)

TOKEN_FIELDS = {
    "assessment": "assessment_token",
    "business": "business_form_token",
    "acceptance": "acceptance_token",
}

SERVICE_CHOICES = [
    "LIFE_COACHING",
    "BUSINESS_COACHING",
    "CAREER_COACHING",
    "HEALTH_WELLNESS",
    "RELATIONSHIP_COACHING",
    "EXECUTIVE_COACHING",
    "OTHER",
]


# ──────────────────────────────────────────────
# Internals
# ──────────────────────────────────────────────

def _get_prospect(session, prospect_id):
    prospect = session.get(Prospect, prospect_id)
    if prospect is None:
        raise NotFound("Prospect not found.")
    return prospect


def _get_by_token(session, kind, token):
    field = TOKEN_FIELDS.get(kind)
    if field is None:
        raise ValidationFailed(f"Unknown token kind '{kind}'.")
    if not token:
        raise NotFound("Invalid or expired link.")
    prospect = session.execute(
        sa.select(Prospect).where(getattr(Prospect, field) == token)
    ).scalar_one_or_none()
    if prospect is None:
        raise NotFound("Invalid or expired link.")
    return prospect


def _require_source(prospect, operation):
    sources, _ = Prospect.TRANSITIONS[operation]
    if prospect.status not in sources:
        raise InvalidTransition(
            f"Cannot {operation.replace('_', ' ')} for a prospect in {prospect.status}.",
            details={"status": prospect.status, "operation": operation},
        )


def _append_history(session, prospect_id, from_status, to_status, notes=None,
                    actor_id=None):
    sequence = session.execute(
        sa.select(sa.func.count(ProspectStatusHistory.id)).where(
            ProspectStatusHistory.prospect_id == prospect_id
        )
    ).scalar_one()
    session.add(ProspectStatusHistory(
        prospect_id=prospect_id,
        sequence=sequence,
        from_status=from_status,
        to_status=to_status,
        notes=notes,
        changed_by_id=actor_id,
    ))
    try:
        session.flush()
    except IntegrityError:
        raise InvalidTransition("The prospect was changed by someone else.")


def _advance(session, prospect, operation, to_status=None, values=None,
             notes=None, actor_id=None, guard=None):
    """Apply one transition of ``Prospect.TRANSITIONS``.

    Args:
        prospect: Prospect as read in this transaction.
        operation: Key of Prospect.TRANSITIONS.
        to_status: Destination; required only when the operation has
            more than one.
        values: Extra column values written with the status.
        guard: Extra WHERE clause for the conditional write.

    Raises:
        InvalidTransition: wrong source status, or lost a concurrent race.
    """
    _, destinations = Prospect.TRANSITIONS[operation]
    to_status = to_status or destinations[0]
    if to_status not in destinations:
        raise InvalidTransition(f"{operation} cannot lead to {to_status}.")
    _require_source(prospect, operation)

    from_status = prospect.status
    stmt = (
        sa.update(Prospect)
        .where(Prospect.id == prospect.id, Prospect.status == from_status)
        .values(status=to_status, **(values or {}))
        .execution_options(synchronize_session=False)
    )
    if guard is not None:
        stmt = stmt.where(guard)
    result = session.execute(stmt)
    if result.rowcount != 1:
        raise InvalidTransition("The prospect was changed by someone else.")
    session.expire(prospect)

    _append_history(session, prospect.id, from_status, to_status, notes, actor_id)
    session.add(AuditEvent(
        actor_user_id=actor_id,
        entity_type="prospect",
        entity_id=prospect.id,
        action=f"prospect.{operation}",
        metadata_={"old_status": from_status, "new_status": to_status},
    ))
    session.flush()
    logger.info(f"Prospect {prospect.id}: {from_status} -> {to_status} ({operation})")
    return prospect


def _issue_token(session, prospect, operation, field, prefix, actor_id=None):
    """Issue a form token once; later calls return the same token."""
    existing = getattr(prospect, field)
    sources, _ = Prospect.TRANSITIONS[operation]
    if existing is not None and prospect.status not in sources:
        return existing

    column = getattr(Prospect, field)
    try:
        _advance(
            session, prospect, operation,
            values={field: sa.func.coalesce(column, generate_form_token(prefix))},
            actor_id=actor_id,
        )
    except InvalidTransition:
        # A concurrent caller may have issued it first.
        session.expire(prospect)
        if getattr(prospect, field) is not None:
            return getattr(prospect, field)
        raise
    return getattr(prospect, field)


def _create(session, first_name, last_name, email, status, phone=None,
            phone_country_code=None, referrer_name=None, notes=None,
            actor_id=None, **extra):
    first_name = sanitize(first_name)
    last_name = sanitize(last_name)
    email = (email or "").lower().strip()

    errors = {}
    if not first_name:
        errors["first_name"] = "First name is required."
    if not last_name:
        errors["last_name"] = "Last name is required."
    if "@" not in email:
        errors["email"] = "A valid email is required."
    if errors:
        raise ValidationFailed("Invalid prospect.", details=errors)

    if session.execute(
        sa.select(Prospect.id).where(sa.func.lower(Prospect.email) == email)
    ).first():
        raise DuplicateProspect(f"A prospect with email {email} already exists.")

    prospect = Prospect(
        first_name=first_name,
        last_name=last_name,
        email=email,
        phone=sanitize(phone),
        phone_country_code=sanitize(phone_country_code),
        referrer_name=sanitize(referrer_name),
        status=status,
        **extra,
    )
    session.add(prospect)
    try:
        session.flush()
    except IntegrityError:
        raise DuplicateProspect(f"A prospect with email {email} already exists.")

    _append_history(session, prospect.id, None, status, notes, actor_id)
    session.add(AuditEvent(
        actor_user_id=actor_id,
        entity_type="prospect",
        entity_id=prospect.id,
        action="prospect.created",
        metadata_={"status": status},
    ))
    session.flush()
    logger.info(f"Created prospect {prospect.id} in {status}")
    return prospect


# ──────────────────────────────────────────────
# Creation
# ──────────────────────────────────────────────

@unit_of_work
def create_prospect(first_name, last_name, email, phone=None,
                    phone_country_code=None, referrer_name=None,
                    assessment_survey_id=None, assessment_submission_id=None,
                    now=None, session=None):
    """Create a prospect from a completed assessment (ASSESSMENT_COMPLETED).

    Raises:
        DuplicateProspect: the email (case-insensitive) is already a prospect.
        ValidationFailed: missing name or invalid email.
    """
    return _create(
        session, first_name, last_name, email, "ASSESSMENT_COMPLETED",
        phone=phone,
        phone_country_code=phone_country_code,
        referrer_name=referrer_name,
        notes="Assessment submitted",
        assessment_survey_id=assessment_survey_id,
        assessment_submission_id=assessment_submission_id,
        assessment_completed_at=as_utc(now) or utcnow(),
    )


@unit_of_work
def create_manual_prospect(first_name, last_name, email, phone=None,
                           referrer_name=None, status="ASSESSMENT_PENDING",
                           actor_id=None, now=None, session=None):
    """Admin entry of a prospect in one of the two entry states."""
    if status not in Prospect.ENTRY_STATUSES:
        raise ValidationFailed(
            f"A new prospect must start in one of: {', '.join(Prospect.ENTRY_STATUSES)}."
        )
    extra = {}
    if status == "ASSESSMENT_COMPLETED":
        extra["assessment_completed_at"] = as_utc(now) or utcnow()
    return _create(
        session, first_name, last_name, email, status,
        phone=phone,
        referrer_name=referrer_name,
        notes="Created manually by admin",
        actor_id=actor_id,
        **extra,
    )


@unit_of_work
def record_assessment(contact, survey_id, submission_id, now=None, session=None):
    """Attach a public assessment submission to its prospect.

    Creates the prospect (ASSESSMENT_COMPLETED) when the email is new.
    An existing prospect gets the new submission linked, and moves to
    ASSESSMENT_COMPLETED if it was still ASSESSMENT_PENDING.
    """
    now = as_utc(now) or utcnow()
    email = (contact.get("email") or "").lower().strip()
    prospect = session.execute(
        sa.select(Prospect).where(sa.func.lower(Prospect.email) == email)
    ).scalar_one_or_none()

    if prospect is None:
        return create_prospect.inner(
            contact.get("first_name"),
            contact.get("last_name"),
            email,
            phone=contact.get("phone"),
            phone_country_code=contact.get("phone_country_code"),
            referrer_name=contact.get("referrer_name"),
            assessment_survey_id=survey_id,
            assessment_submission_id=submission_id,
            now=now,
            session=session,
        )

    values = {
        "assessment_survey_id": survey_id,
        "assessment_submission_id": submission_id,
        "assessment_completed_at": now,
    }
    if prospect.status == "ASSESSMENT_PENDING":
        return _advance(
            session, prospect, "complete_assessment",
            values=values, notes="Assessment submitted",
        )
    for key, value in values.items():
        setattr(prospect, key, value)
    session.flush()
    return prospect


# ──────────────────────────────────────────────
# Transitions
# ──────────────────────────────────────────────

@unit_of_work
def complete_assessment(assessment_token, submission_id=None, now=None,
                        session=None):
    """External edge ASSESSMENT_PENDING -> ASSESSMENT_COMPLETED."""
    prospect = _get_by_token(session, "assessment", assessment_token)
    return _advance(
        session, prospect, "complete_assessment",
        values={
            "assessment_completed_at": as_utc(now) or utcnow(),
            "assessment_submission_id": submission_id,
        },
        notes="Assessment completed",
    )


@unit_of_work
def schedule_orientation(prospect_id, slot_id, date, actor_id=None, now=None,
                         session=None):
    """Book an orientation occurrence and move to ORIENTATION_SCHEDULED.

    Returns:
        dict: ``prospect``, ``booking`` and the calendar's ``meeting_link``.

    Raises:
        InvalidTransition: prospect is not ASSESSMENT_COMPLETED.
        SlotUnavailable: the occurrence is full or does not exist.
    """
    prospect = _get_prospect(session, prospect_id)
    _require_source(prospect, "schedule_orientation")

    calendar = availability_service.get_or_create_orientation_calendar.inner(
        session=session
    )
    reservation = availability_service.reserve_slot.inner(
        calendar.id, slot_id, date,
        booker={
            "name": prospect.full_name,
            "email": prospect.email,
            "phone": prospect.phone,
        },
        prospect_id=prospect.id,
        status="CONFIRMED",
        now=now,
        session=session,
    )
    booking = reservation["booking"]

    _advance(
        session, prospect, "schedule_orientation",
        values={"orientation_scheduled_at": booking.starts_at},
        notes=f"Orientation booked for {booking.booking_date} {booking.start_time}",
        actor_id=actor_id,
    )
    return {
        "prospect": prospect,
        "booking": booking,
        "meeting_link": reservation["meeting_link"],
    }


@unit_of_work
def complete_orientation(prospect_id, notes=None, actor_id=None, now=None,
                         session=None):
    """ORIENTATION_SCHEDULED -> ORIENTATION_COMPLETED."""
    prospect = _get_prospect(session, prospect_id)
    notes = sanitize(notes)
    return _advance(
        session, prospect, "complete_orientation",
        values={
            "orientation_completed_at": as_utc(now) or utcnow(),
            "orientation_notes": notes,
        },
        notes=notes,
        actor_id=actor_id,
    )


@unit_of_work
def generate_business_form_token(prospect_id, actor_id=None, session=None):
    """ORIENTATION_COMPLETED -> BUSINESS_FORM_PENDING; returns the token."""
    prospect = _get_prospect(session, prospect_id)
    return _issue_token(
        session, prospect, "generate_business_form_token",
        "business_form_token", "bf", actor_id=actor_id,
    )


def _validate_business_form(payload):
    errors = {}
    data = {
        "company_name": sanitize(payload.get("company_name")),
        "bio": sanitize(payload.get("bio")),
        "vision_statement": sanitize(payload.get("vision_statement")),
        "mission_statement": sanitize(payload.get("mission_statement")),
        "proposed_cost_of_services": sanitize(payload.get("proposed_cost_of_services")),
    }
    if not data["company_name"]:
        errors["company_name"] = "Company name is required."
    for field, label in (("bio", "Bio"), ("vision_statement", "Vision statement"),
                         ("mission_statement", "Mission statement")):
        if not data[field] or len(data[field]) < 10:
            errors[field] = f"{label} must be at least 10 characters."
    if not data["proposed_cost_of_services"]:
        errors["proposed_cost_of_services"] = "Proposed cost of services is required."

    services = payload.get("services_interested")
    if not isinstance(services, list) or not services:
        errors["services_interested"] = "Select at least one service."
    else:
        unknown = [s for s in services if s not in SERVICE_CHOICES]
        if unknown:
            errors["services_interested"] = f"Unknown services: {', '.join(map(str, unknown))}."
        data["services_interested"] = list(dict.fromkeys(services))

    if errors:
        raise ValidationFailed("Please correct the highlighted fields.", details=errors)
    return data


@unit_of_work
def submit_business_form(business_form_token, payload, now=None, session=None):
    """External edge BUSINESS_FORM_PENDING -> BUSINESS_FORM_SUBMITTED.

    Args:
        payload: dict with company_name, bio, vision_statement,
            mission_statement, services_interested (list) and
            proposed_cost_of_services.

    Raises:
        NotFound: unknown token.
        ValidationFailed: field errors in ``details``.
        InvalidTransition: the form was already submitted.
    """
    prospect = _get_by_token(session, "business", business_form_token)
    _require_source(prospect, "submit_business_form")
    data = _validate_business_form(payload or {})
    data["business_form_submitted_at"] = as_utc(now) or utcnow()
    return _advance(
        session, prospect, "submit_business_form",
        values=data, notes="Business form submitted",
    )


@unit_of_work
def schedule_interview(prospect_id, when, notes=None, actor_id=None, session=None):
    """BUSINESS_FORM_SUBMITTED -> INTERVIEW_SCHEDULED."""
    when = as_utc(when)
    if when is None:
        raise ValidationFailed("Interview date and time are required.")
    prospect = _get_prospect(session, prospect_id)
    return _advance(
        session, prospect, "schedule_interview",
        values={"interview_scheduled_at": when},
        notes=sanitize(notes),
        actor_id=actor_id,
    )


@unit_of_work
def complete_interview(prospect_id, result, notes=None, actor_id=None, now=None,
                       session=None):
    """INTERVIEW_SCHEDULED -> APPROVED or REJECTED, by ``result``."""
    if result not in Prospect.INTERVIEW_RESULTS:
        raise ValidationFailed("Interview result must be APPROVED or REJECTED.")
    prospect = _get_prospect(session, prospect_id)
    notes = sanitize(notes)
    return _advance(
        session, prospect, "complete_interview",
        to_status=result,
        values={
            "interview_completed_at": as_utc(now) or utcnow(),
            "interview_result": result,
            "interview_notes": notes,
        },
        notes=notes,
        actor_id=actor_id,
    )


@unit_of_work
def generate_acceptance_token(prospect_id, actor_id=None, session=None):
    """APPROVED -> ACCEPTANCE_PENDING; returns the token."""
    prospect = _get_prospect(session, prospect_id)
    return _issue_token(
        session, prospect, "generate_acceptance_token",
        "acceptance_token", "ac", actor_id=actor_id,
    )


@unit_of_work
def accept_terms(acceptance_token, terms_accepted, privacy_accepted,
                 non_refund_acknowledged, now=None, session=None):
    """External edge ACCEPTANCE_PENDING -> PAYMENT_PENDING.

    All three acknowledgements must be given.
    """
    prospect = _get_by_token(session, "acceptance", acceptance_token)
    _require_source(prospect, "accept_terms")

    missing = [
        name for name, given in (
            ("terms_accepted", terms_accepted),
            ("privacy_accepted", privacy_accepted),
            ("non_refund_acknowledged", non_refund_acknowledged),
        ) if given is not True
    ]
    if missing:
        raise ValidationFailed(
            "All agreements must be accepted.",
            details={name: "Required." for name in missing},
        )

    now = as_utc(now) or utcnow()
    return _advance(
        session, prospect, "accept_terms",
        values={
            "terms_accepted_at": now,
            "privacy_accepted_at": now,
            "non_refund_acknowledged_at": now,
        },
        notes="Terms accepted",
    )


def complete_payment(session, prospect, notes=None, actor_id=None):
    """PAYMENT_PENDING -> PAYMENT_COMPLETED, inside the caller's unit of work."""
    return _advance(
        session, prospect, "complete_payment", notes=notes, actor_id=actor_id,
    )


@unit_of_work
def create_coach_from_prospect(prospect_id, password=None, actor_id=None,
                               session=None):
    """PAYMENT_COMPLETED -> ACCOUNT_CREATED, creating the coach account.

    Args:
        password: optional admin-chosen password; generated when omitted.

    Returns:
        dict: ``prospect``, ``user`` and ``temporary_password``. The
        password is set only when it was generated; it is shown once and
        is not stored in plaintext anywhere.

    Raises:
        ValidationFailed: the supplied password is too short.
        AlreadyLinked: an account already exists for this prospect.
        InvalidTransition: payment not completed.
        DuplicateAccount: a user with this email already exists.
    """
    prospect = _get_prospect(session, prospect_id)
    if prospect.coach_profile_id is not None:
        raise AlreadyLinked()
    _require_source(prospect, "create_coach_account")

    user, profile, temporary = account_service.issue_coach_account(
        session, prospect, password=password
    )
    _advance(
        session, prospect, "create_coach_account",
        values={"coach_profile_id": profile.id},
        guard=Prospect.coach_profile_id.is_(None),
        notes="Coach account created",
        actor_id=actor_id,
    )
    return {"prospect": prospect, "user": user, "temporary_password": temporary}


@unit_of_work
def reject_prospect(prospect_id, notes=None, actor_id=None, session=None):
    """Reject a prospect from any non-terminal status."""
    prospect = _get_prospect(session, prospect_id)
    return _advance(
        session, prospect, "reject", notes=sanitize(notes), actor_id=actor_id,
    )


# ──────────────────────────────────────────────
# Queries
# ──────────────────────────────────────────────

@unit_of_work
def get_prospect(prospect_id, session=None):
    return _get_prospect(session, prospect_id)


@unit_of_work
def get_prospect_by_token(token, kind, session=None):
    """Resolve an external-form token (kind: assessment|business|acceptance)."""
    return _get_by_token(session, kind, token)


@unit_of_work
def list_prospects(status=None, search=None, session=None):
    """Prospects, newest first, optionally filtered by status and a search term."""
    query = sa.select(Prospect)
    if status:
        query = query.where(Prospect.status == status)
    if search:
        term = f"%{search.strip().lower()}%"
        query = query.where(sa.or_(
            sa.func.lower(Prospect.first_name).like(term),
            sa.func.lower(Prospect.last_name).like(term),
            sa.func.lower(Prospect.email).like(term),
        ))
    query = query.order_by(Prospect.created_at.desc(), Prospect.id)
    return session.execute(query).scalars().all()


@unit_of_work
def get_pipeline_stats(session=None):
    """Count of prospects per status, plus the total."""
    rows = session.execute(
        sa.select(Prospect.status, sa.func.count(Prospect.id)).group_by(Prospect.status)
    )
    counts = {status: 0 for status in Prospect.STATUSES}
    for status, count in rows:
        counts[status] = count
    return {"by_status": counts, "total": sum(counts.values())}
