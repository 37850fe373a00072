"""Tests for the prospect pipeline state machine.

Covers:
- Prospect creation (assessment and manual) and duplicate detection
- Every transition of the happy path, with history + audit rows
- Rejection of out-of-order steps (status untouched, nothing logged)
- Form tokens issued once, re-issue returns the same token
- Interview outcomes, terms acceptance, coach account creation
- Rejection from any non-terminal status
- Concurrent transitions and token issuing on separate sessions
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import sqlalchemy as sa
from werkzeug.security import check_password_hash

from conftest import next_weekday
from coachhub.errors import (
    AlreadyLinked,
    DuplicateAccount,
    DuplicateProspect,
    InvalidTransition,
    NotFound,
    ValidationFailed,
)
from coachhub.extensions import db
from coachhub.models.audit import AuditEvent
from coachhub.models.prospect import Prospect
from coachhub.models.prospect_history import ProspectStatusHistory
from coachhub.models.user import User
from coachhub.services import availability_service, pipeline_service

BUSINESS_FORM = {
    "company_name": "Bright Path Coaching",
    "bio": "Ten years coaching new managers.",
    "vision_statement": "Every manager leads with confidence.",
    "mission_statement": "Practical coaching for first-time leaders.",
    "services_interested": ["LIFE_COACHING", "CAREER_COACHING"],
    "proposed_cost_of_services": "$150 per session",
}


def _history(prospect_id):
    return (
        ProspectStatusHistory.query.filter_by(prospect_id=prospect_id)
        .order_by(ProspectStatusHistory.sequence)
        .all()
    )


def _orientation_slot_id():
    calendar, _ = availability_service.get_or_create_orientation_calendar()
    monday = [s for s in calendar.slots if s.day_of_week == 1][0]
    return monday.id


class TestCreateProspect:

    def test_assessment_prospect_starts_completed(self):
        prospect, error = pipeline_service.create_prospect(
            "Jamie", "Rivera", "Jamie@Example.com", phone="555-0101",
        )
        assert error is None
        assert prospect.status == "ASSESSMENT_COMPLETED"
        assert prospect.email == "jamie@example.com"
        assert prospect.assessment_completed_at is not None
        assert prospect.assessment_token.startswith("as_")

        history = _history(prospect.id)
        assert len(history) == 1
        assert history[0].sequence == 0
        assert history[0].from_status is None
        assert history[0].to_status == "ASSESSMENT_COMPLETED"

    def test_duplicate_email_is_case_insensitive(self):
        pipeline_service.create_prospect("Jamie", "Rivera", "jamie@example.com")
        prospect, error = pipeline_service.create_prospect(
            "Jamie", "Rivera", "JAMIE@example.com"
        )
        assert prospect is None
        assert isinstance(error, DuplicateProspect)
        assert Prospect.query.count() == 1

    def test_missing_fields_are_reported(self):
        _, error = pipeline_service.create_prospect("", "Rivera", "not-an-email")
        assert isinstance(error, ValidationFailed)
        assert set(error.details) == {"first_name", "email"}

    def test_manual_prospect_defaults_to_pending(self, seed_data):
        prospect, error = pipeline_service.create_manual_prospect(
            "Sam", "Lee", "sam@example.com", actor_id=seed_data["admin_id"],
        )
        assert error is None
        assert prospect.status == "ASSESSMENT_PENDING"
        audit = AuditEvent.query.filter_by(entity_id=prospect.id).first()
        assert audit.action == "prospect.created"
        assert audit.actor_user_id == seed_data["admin_id"]

    def test_manual_prospect_rejects_late_status(self):
        _, error = pipeline_service.create_manual_prospect(
            "Sam", "Lee", "sam@example.com", status="APPROVED",
        )
        assert isinstance(error, ValidationFailed)
        assert Prospect.query.count() == 0


class TestAssessment:

    def test_complete_assessment_by_token(self):
        prospect, _ = pipeline_service.create_manual_prospect(
            "Sam", "Lee", "sam@example.com"
        )
        token = prospect.assessment_token

        prospect, error = pipeline_service.complete_assessment(token, submission_id="sub-1")
        assert error is None
        assert prospect.status == "ASSESSMENT_COMPLETED"
        assert prospect.assessment_submission_id == "sub-1"

        # A second completion is out of order
        _, error = pipeline_service.complete_assessment(token)
        assert isinstance(error, InvalidTransition)

    def test_unknown_token(self):
        _, error = pipeline_service.complete_assessment("as_nope")
        assert isinstance(error, NotFound)

    def test_record_assessment_links_existing_prospect(self):
        prospect, _ = pipeline_service.create_manual_prospect(
            "Sam", "Lee", "sam@example.com"
        )
        contact = {"first_name": "Sam", "last_name": "Lee", "email": "SAM@example.com"}
        result, error = pipeline_service.record_assessment(contact, "survey-1", "sub-9")
        assert error is None
        assert result.id == prospect.id
        assert result.status == "ASSESSMENT_COMPLETED"
        assert result.assessment_submission_id == "sub-9"
        assert Prospect.query.count() == 1


class TestHappyPath:

    def test_full_pipeline(self, seed_data):
        admin_id = seed_data["admin_id"]
        prospect, _ = pipeline_service.create_prospect(
            "Jamie", "Rivera", "jamie@example.com"
        )
        pid = prospect.id

        # Orientation
        monday = next_weekday(1)
        result, error = pipeline_service.schedule_orientation(
            pid, _orientation_slot_id(), monday.isoformat(), actor_id=admin_id,
        )
        assert error is None
        assert result["prospect"].status == "ORIENTATION_SCHEDULED"
        assert result["booking"].status == "CONFIRMED"
        assert result["booking"].prospect_id == pid
        assert result["prospect"].orientation_scheduled_at is not None

        prospect, error = pipeline_service.complete_orientation(
            pid, notes="Engaged and curious", actor_id=admin_id,
        )
        assert prospect.status == "ORIENTATION_COMPLETED"
        assert prospect.orientation_notes == "Engaged and curious"

        # Business form
        token, error = pipeline_service.generate_business_form_token(pid, actor_id=admin_id)
        assert error is None
        assert token.startswith("bf_")
        prospect, error = pipeline_service.submit_business_form(token, BUSINESS_FORM)
        assert error is None
        assert prospect.status == "BUSINESS_FORM_SUBMITTED"
        assert prospect.company_name == "Bright Path Coaching"
        assert prospect.services_interested == ["LIFE_COACHING", "CAREER_COACHING"]

        # Interview
        when = datetime.now(timezone.utc) + timedelta(days=7)
        prospect, error = pipeline_service.schedule_interview(pid, when, actor_id=admin_id)
        assert prospect.status == "INTERVIEW_SCHEDULED"
        prospect, error = pipeline_service.complete_interview(
            pid, "APPROVED", notes="Strong fit", actor_id=admin_id,
        )
        assert prospect.status == "APPROVED"
        assert prospect.interview_result == "APPROVED"

        # Acceptance
        acceptance, error = pipeline_service.generate_acceptance_token(pid, actor_id=admin_id)
        assert acceptance.startswith("ac_")
        prospect, error = pipeline_service.accept_terms(acceptance, True, True, True)
        assert error is None
        assert prospect.status == "PAYMENT_PENDING"
        assert prospect.terms_accepted_at is not None

        # Payment (inside a caller's transaction)
        pipeline_service.complete_payment(db.session, prospect, notes="Paid")
        db.session.commit()
        assert db.session.get(Prospect, pid).status == "PAYMENT_COMPLETED"

        # Account
        result, error = pipeline_service.create_coach_from_prospect(pid, actor_id=admin_id)
        assert error is None
        assert result["prospect"].status == "ACCOUNT_CREATED"

        statuses = [h.to_status for h in _history(pid)]
        assert statuses == [
            "ASSESSMENT_COMPLETED",
            "ORIENTATION_SCHEDULED",
            "ORIENTATION_COMPLETED",
            "BUSINESS_FORM_PENDING",
            "BUSINESS_FORM_SUBMITTED",
            "INTERVIEW_SCHEDULED",
            "APPROVED",
            "ACCEPTANCE_PENDING",
            "PAYMENT_PENDING",
            "PAYMENT_COMPLETED",
            "ACCOUNT_CREATED",
        ]
        assert [h.sequence for h in _history(pid)] == list(range(11))


class TestOutOfOrder:

    def test_wrong_source_leaves_prospect_untouched(self, make_prospect):
        prospect = make_prospect("ASSESSMENT_COMPLETED")
        pid = prospect.id

        _, error = pipeline_service.complete_orientation(pid)
        assert isinstance(error, InvalidTransition)
        assert error.details["status"] == "ASSESSMENT_COMPLETED"
        assert db.session.get(Prospect, pid).status == "ASSESSMENT_COMPLETED"
        assert _history(pid) == []
        assert AuditEvent.query.count() == 0

    def test_schedule_interview_requires_business_form(self, make_prospect):
        prospect = make_prospect("BUSINESS_FORM_PENDING")
        _, error = pipeline_service.schedule_interview(
            prospect.id, datetime.now(timezone.utc) + timedelta(days=3),
        )
        assert isinstance(error, InvalidTransition)

    def test_schedule_interview_requires_time(self, make_prospect):
        prospect = make_prospect("BUSINESS_FORM_SUBMITTED")
        _, error = pipeline_service.schedule_interview(prospect.id, None)
        assert isinstance(error, ValidationFailed)

    def test_unknown_prospect(self):
        _, error = pipeline_service.complete_orientation("missing-id")
        assert isinstance(error, NotFound)


class TestTokens:

    def test_business_form_token_issued_once(self, make_prospect):
        prospect = make_prospect("ORIENTATION_COMPLETED")
        pid = prospect.id

        first, error = pipeline_service.generate_business_form_token(pid)
        assert error is None
        second, error = pipeline_service.generate_business_form_token(pid)
        assert error is None
        assert first == second
        assert len(_history(pid)) == 1
        assert db.session.get(Prospect, pid).status == "BUSINESS_FORM_PENDING"

    def test_acceptance_token_issued_once(self, make_prospect):
        prospect = make_prospect("APPROVED")
        first, _ = pipeline_service.generate_acceptance_token(prospect.id)
        second, _ = pipeline_service.generate_acceptance_token(prospect.id)
        assert first == second

    def test_token_before_its_step_fails(self, make_prospect):
        prospect = make_prospect("INTERVIEW_SCHEDULED")
        token, error = pipeline_service.generate_acceptance_token(prospect.id)
        assert token is None
        assert isinstance(error, InvalidTransition)
        assert db.session.get(Prospect, prospect.id).acceptance_token is None

    def test_token_lookup_by_kind(self, make_prospect):
        prospect = make_prospect("BUSINESS_FORM_PENDING")
        found, error = pipeline_service.get_prospect_by_token(
            prospect.business_form_token, "business"
        )
        assert found.id == prospect.id
        _, error = pipeline_service.get_prospect_by_token(
            prospect.business_form_token, "acceptance"
        )
        assert isinstance(error, NotFound)


class TestBusinessForm:

    def test_validation_errors_keep_status(self, make_prospect):
        prospect = make_prospect("BUSINESS_FORM_PENDING")
        payload = dict(BUSINESS_FORM, bio="short", services_interested=["ASTROLOGY"])
        _, error = pipeline_service.submit_business_form(
            prospect.business_form_token, payload,
        )
        assert isinstance(error, ValidationFailed)
        assert set(error.details) == {"bio", "services_interested"}
        assert db.session.get(Prospect, prospect.id).status == "BUSINESS_FORM_PENDING"

    def test_second_submission_rejected(self, make_prospect):
        prospect = make_prospect("BUSINESS_FORM_PENDING")
        token = prospect.business_form_token
        pipeline_service.submit_business_form(token, BUSINESS_FORM)
        _, error = pipeline_service.submit_business_form(token, BUSINESS_FORM)
        assert isinstance(error, InvalidTransition)

    def test_html_is_stripped(self, make_prospect):
        prospect = make_prospect("BUSINESS_FORM_PENDING")
        payload = dict(BUSINESS_FORM, company_name="<b>Bright</b> Path")
        prospect, error = pipeline_service.submit_business_form(
            prospect.business_form_token, payload,
        )
        assert error is None
        assert prospect.company_name == "Bright Path"


class TestInterviewAndAcceptance:

    def test_interview_rejection(self, make_prospect):
        prospect = make_prospect("INTERVIEW_SCHEDULED")
        prospect, error = pipeline_service.complete_interview(prospect.id, "REJECTED")
        assert error is None
        assert prospect.status == "REJECTED"
        assert prospect.is_terminal

    def test_invalid_interview_result(self, make_prospect):
        prospect = make_prospect("INTERVIEW_SCHEDULED")
        _, error = pipeline_service.complete_interview(prospect.id, "MAYBE")
        assert isinstance(error, ValidationFailed)

    def test_all_agreements_required(self, make_prospect):
        prospect = make_prospect("ACCEPTANCE_PENDING")
        _, error = pipeline_service.accept_terms(
            prospect.acceptance_token, True, "yes", False,
        )
        assert isinstance(error, ValidationFailed)
        assert set(error.details) == {"privacy_accepted", "non_refund_acknowledged"}
        assert db.session.get(Prospect, prospect.id).status == "ACCEPTANCE_PENDING"


class TestCoachAccount:

    def test_creates_user_and_profile(self, make_prospect):
        prospect = make_prospect("PAYMENT_COMPLETED", company_name="Bright Path")
        result, error = pipeline_service.create_coach_from_prospect(prospect.id)
        assert error is None

        user = result["user"]
        assert user.role == "COACH"
        assert user.must_change_password is True
        assert check_password_hash(user.password_hash, result["temporary_password"])
        assert user.coach_profile.company_name == "Bright Path"
        assert result["prospect"].coach_profile_id == user.coach_profile.id

    def test_second_call_reports_already_linked(self, make_prospect):
        prospect = make_prospect("PAYMENT_COMPLETED")
        pipeline_service.create_coach_from_prospect(prospect.id)
        _, error = pipeline_service.create_coach_from_prospect(prospect.id)
        assert isinstance(error, AlreadyLinked)
        assert User.query.filter_by(email=prospect.email).count() == 1

    def test_existing_user_email(self, make_prospect, seed_data):
        prospect = make_prospect("PAYMENT_COMPLETED", email="coach@example.com")
        _, error = pipeline_service.create_coach_from_prospect(prospect.id)
        assert isinstance(error, DuplicateAccount)
        prospect = db.session.get(Prospect, prospect.id)
        assert prospect.status == "PAYMENT_COMPLETED"
        assert prospect.coach_profile_id is None

    def test_requires_completed_payment(self, make_prospect):
        prospect = make_prospect("PAYMENT_PENDING")
        _, error = pipeline_service.create_coach_from_prospect(prospect.id)
        assert isinstance(error, InvalidTransition)
        assert User.query.count() == 0

    def test_admin_supplied_password(self, make_prospect):
        prospect = make_prospect("PAYMENT_COMPLETED")
        result, error = pipeline_service.create_coach_from_prospect(
            prospect.id, password="Welcome-aboard-2030",
        )
        assert error is None
        assert result["temporary_password"] is None
        user = result["user"]
        assert check_password_hash(user.password_hash, "Welcome-aboard-2030")
        assert user.must_change_password is False

    def test_short_password_rejected(self, make_prospect):
        prospect = make_prospect("PAYMENT_COMPLETED")
        _, error = pipeline_service.create_coach_from_prospect(
            prospect.id, password="short",
        )
        assert isinstance(error, ValidationFailed)
        assert "password" in error.details
        assert User.query.count() == 0
        assert db.session.get(Prospect, prospect.id).status == "PAYMENT_COMPLETED"


class TestRejection:

    def test_reject_from_any_open_status(self, make_prospect):
        for status in ("ASSESSMENT_PENDING", "INTERVIEW_SCHEDULED", "PAYMENT_PENDING"):
            prospect = make_prospect(status)
            prospect, error = pipeline_service.reject_prospect(prospect.id, notes="Not a fit")
            assert error is None
            assert prospect.status == "REJECTED"

    def test_terminal_statuses_cannot_be_rejected(self, make_prospect):
        for status in ("REJECTED", "ACCOUNT_CREATED"):
            prospect = make_prospect(status)
            _, error = pipeline_service.reject_prospect(prospect.id)
            assert isinstance(error, InvalidTransition)

    def test_reject_sources_are_all_open_statuses(self):
        sources, destinations = Prospect.TRANSITIONS["reject"]
        assert destinations == ["REJECTED"]
        assert set(sources) == set(Prospect.STATUSES) - {"REJECTED", "ACCOUNT_CREATED"}
        assert "INTERVIEW_COMPLETED" in sources

    def test_allowed_operations_include_reject(self, make_prospect):
        prospect = make_prospect("PAYMENT_COMPLETED")
        assert set(prospect.allowed_operations) == {"create_coach_account", "reject"}
        assert make_prospect("REJECTED").allowed_operations == []


# ══════════════════════════════════════════════
#  CONCURRENCY
# ══════════════════════════════════════════════

def _add_prospect(session, status, **fields):
    prospect = Prospect(
        first_name="Riley", last_name="Race", email="riley@example.com",
        status=status, **fields
    )
    session.add(prospect)
    session.commit()
    return prospect.id


def _history_in(session, prospect_id):
    return session.execute(
        sa.select(ProspectStatusHistory)
        .where(ProspectStatusHistory.prospect_id == prospect_id)
        .order_by(ProspectStatusHistory.sequence)
    ).scalars().all()


def _run_first(competing):
    """``_require_source`` stand-in that runs ``competing`` once, before
    the first check, as if another request got there first."""
    original = pipeline_service._require_source
    ran = []

    def check(prospect, operation):
        if not ran:
            ran.append(True)
            ran.append(competing())
        return original(prospect, operation)

    return check, ran


class TestConcurrentTransitions:

    def test_stale_status_loses_conditional_update(self, two_sessions):
        first, second = two_sessions
        pid = _add_prospect(first, "ORIENTATION_SCHEDULED")

        check, ran = _run_first(
            lambda: pipeline_service.reject_prospect(pid, session=second)
        )
        with patch.object(pipeline_service, "_require_source", side_effect=check):
            result, error = pipeline_service.complete_orientation(pid, session=first)

        _, competing_error = ran[1]
        assert competing_error is None
        assert result is None
        assert isinstance(error, InvalidTransition)
        assert "someone else" in error.message

        first.expire_all()
        assert first.get(Prospect, pid).status == "REJECTED"
        assert [h.to_status for h in _history_in(first, pid)] == ["REJECTED"]

    def test_concurrent_token_generation_issues_one_token(self, two_sessions):
        first, second = two_sessions
        pid = _add_prospect(first, "ORIENTATION_COMPLETED")

        check, ran = _run_first(
            lambda: pipeline_service.generate_business_form_token(pid, session=second)
        )
        with patch.object(pipeline_service, "_require_source", side_effect=check):
            token, error = pipeline_service.generate_business_form_token(
                pid, session=first,
            )

        competing_token, competing_error = ran[1]
        assert competing_error is None
        assert error is None
        assert token == competing_token

        first.expire_all()
        prospect = first.get(Prospect, pid)
        assert prospect.status == "BUSINESS_FORM_PENDING"
        assert prospect.business_form_token == token
        assert len(_history_in(first, pid)) == 1

    def test_history_sequence_collision_rolls_back(self, make_prospect):
        prospect = make_prospect("ORIENTATION_SCHEDULED")
        pid = prospect.id
        # A concurrent writer already appended the next history row.
        db.session.add(ProspectStatusHistory(
            prospect_id=pid, sequence=1,
            from_status="ASSESSMENT_COMPLETED", to_status="ORIENTATION_SCHEDULED",
        ))
        db.session.commit()

        _, error = pipeline_service.complete_orientation(pid)
        assert isinstance(error, InvalidTransition)
        assert db.session.get(Prospect, pid).status == "ORIENTATION_SCHEDULED"
        assert [h.sequence for h in _history(pid)] == [1]
        assert AuditEvent.query.count() == 0


class TestQueries:

    def test_stats_and_filters(self, make_prospect):
        make_prospect("ASSESSMENT_COMPLETED", first_name="Alex")
        make_prospect("ASSESSMENT_COMPLETED")
        make_prospect("APPROVED")

        stats, _ = pipeline_service.get_pipeline_stats()
        assert stats["total"] == 3
        assert stats["by_status"]["ASSESSMENT_COMPLETED"] == 2
        assert stats["by_status"]["APPROVED"] == 1
        assert stats["by_status"]["REJECTED"] == 0

        rows, _ = pipeline_service.list_prospects(status="APPROVED")
        assert len(rows) == 1
        rows, _ = pipeline_service.list_prospects(search="alex")
        assert [p.first_name for p in rows] == ["Alex"]
