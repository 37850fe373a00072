"""Submission service — answer validation, scoring and persistence.

Answers arrive as ``{question_id: value}``:

- MULTIPLE_CHOICE: an option id (a one-element list is accepted)
- MULTIPLE_SELECT: a list of option ids
- LIKERT_SCALE:    an integer
- TEXT_*:          a string

Blank values (None, "", whitespace or HTML-only text, []) count as
unanswered. A missing required answer is reported before any format error.

Only quizzes with a score mode other than NO_SCORING are scored. Scoreable
questions are choice questions with at least one correct option; Likert
and text questions never count. Percentages round half up.
"""

import logging

import sqlalchemy as sa

from coachhub.errors import (
    InvalidAnswerFormat,
    MissingRequiredAnswer,
    RetakeNotAllowed,
    SurveyUnavailable,
    ValidationFailed,
)
from coachhub.models.survey import Survey, SurveySubmission
from coachhub.services import pipeline_service
from coachhub.services.question_config import AnswerFormatError, config_for, is_blank
from coachhub.services.unit_of_work import unit_of_work
from coachhub.utils import as_utc, sanitize, utcnow

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────
# Validation & scoring
# ──────────────────────────────────────────────

def validate_answers(questions, answers):
    """Check raw answers against their questions.

    Returns:
        dict: question_id -> normalized answer (unanswered optional
        questions are left out).

    Raises:
        MissingRequiredAnswer: ``details["question_ids"]`` lists them.
        InvalidAnswerFormat: ``details`` maps question id -> reason.
    """
    if not isinstance(answers, dict):
        raise InvalidAnswerFormat("Answers must be an object keyed by question id.")

    known = {q.id for q in questions}
    missing = []
    invalid = {}
    normalized = {}

    for question in questions:
        raw = answers.get(question.id)
        if is_blank(raw):
            if question.is_required:
                missing.append(question.id)
            continue
        try:
            normalized[question.id] = config_for(question).normalize(raw)
        except AnswerFormatError as e:
            invalid[question.id] = str(e)

    if missing:
        raise MissingRequiredAnswer(details={"question_ids": missing})

    for question_id in answers:
        if question_id not in known:
            invalid[question_id] = "Unknown question."
    if invalid:
        raise InvalidAnswerFormat(details=invalid)

    return normalized


def score_answers(survey, questions, normalized):
    """Score normalized answers.

    Returns:
        tuple: (score_percentage, passed). ``score_percentage`` is None
        when the survey is not scored or has no scoreable question;
        ``passed`` is set only for PASS_FAIL.
    """
    if not survey.is_scored:
        return None, None

    total = 0
    correct = 0
    for question in questions:
        if not question.is_choice:
            continue
        config = config_for(question)
        if not config.is_scoreable:
            continue
        total += 1
        if config.is_correct(normalized.get(question.id)):
            correct += 1

    if total == 0:
        return None, None

    # integer round-half-up of 100 * correct / total
    score = (200 * correct + total) // (2 * total)
    passed = None
    if survey.score_mode == "PASS_FAIL":
        passed = score >= survey.passing_score
    return score, passed


# ──────────────────────────────────────────────
# Submission
# ──────────────────────────────────────────────

def _check_open(survey, now):
    if survey.status != "PUBLISHED":
        raise SurveyUnavailable()
    closes_at = as_utc(survey.closes_at)
    if closes_at is not None and now >= closes_at:
        raise SurveyUnavailable("This survey is closed.")


def _check_respondent(survey, respondent, now):
    _check_open(survey, now)
    if survey.allowed_roles and respondent.role not in survey.allowed_roles:
        raise SurveyUnavailable("This survey is not available to your role.")


def _check_retake(session, survey, user_id=None, email=None):
    """Block a second submission when retakes are off.

    Anonymous surveys store no respondent identity, so there is nothing
    to match against.
    """
    if survey.allow_retake or survey.is_anonymous:
        return
    if user_id:
        match = SurveySubmission.respondent_user_id == user_id
    elif email:
        match = sa.func.lower(SurveySubmission.respondent_email) == email
    else:
        return
    prior = session.execute(
        sa.select(SurveySubmission.id)
        .where(SurveySubmission.survey_id == survey.id, match)
        .limit(1)
    ).first()
    if prior:
        raise RetakeNotAllowed()


def _record(session, survey, answers, user_id=None, email=None, name=None):
    questions = list(survey.questions)
    normalized = validate_answers(questions, answers)
    score, passed = score_answers(survey, questions, normalized)

    submission = SurveySubmission(
        survey_id=survey.id,
        respondent_user_id=None if survey.is_anonymous else user_id,
        respondent_email=None if survey.is_anonymous else email,
        respondent_name=None if survey.is_anonymous else name,
        answers=normalized,
        score_percentage=score,
        passed=passed,
    )
    session.add(submission)
    session.flush()
    logger.info(
        f"Recorded submission {submission.id} for survey {survey.id} "
        f"(score={score}, passed={passed})"
    )
    return submission


def _get_survey(session, survey_id):
    survey = session.get(Survey, survey_id)
    if survey is None:
        raise SurveyUnavailable("Survey not found or not available.")
    return survey


@unit_of_work
def get_survey_for_respondent(survey_id, respondent, now=None, session=None):
    """The survey a signed-in user may answer right now.

    Applies the same availability and role checks as ``submit_survey``.
    """
    now = as_utc(now) or utcnow()
    survey = _get_survey(session, survey_id)
    _check_respondent(survey, respondent, now)
    return survey


@unit_of_work
def submit_survey(survey_id, answers, respondent, now=None, session=None):
    """Record a signed-in user's submission.

    Args:
        respondent: the submitting User; their role must be in the
            survey's ``allowed_roles`` (an empty list allows everyone).

    Returns:
        SurveySubmission

    Raises:
        SurveyUnavailable, RetakeNotAllowed, MissingRequiredAnswer,
        InvalidAnswerFormat.
    """
    now = as_utc(now) or utcnow()
    survey = _get_survey(session, survey_id)
    _check_respondent(survey, respondent, now)

    email = respondent.email.lower()
    _check_retake(session, survey, user_id=respondent.id)
    return _record(
        session, survey, answers,
        user_id=respondent.id, email=email, name=respondent.full_name,
    )


@unit_of_work
def submit_assessment(survey_id, answers, contact, now=None, session=None):
    """Record a public assessment and create or refresh its prospect.

    Args:
        contact: dict with first_name, last_name, email and optional
            phone, phone_country_code, referrer_name.

    Returns:
        dict: ``submission`` and ``prospect``.
    """
    now = as_utc(now) or utcnow()
    survey = _get_survey(session, survey_id)
    if not survey.is_public:
        raise SurveyUnavailable("Survey not found or not available.")
    _check_open(survey, now)

    contact = contact or {}
    email = (contact.get("email") or "").lower().strip()
    errors = {}
    for field in ("first_name", "last_name"):
        if not sanitize(contact.get(field)):
            errors[field] = "Required."
    if "@" not in email:
        errors["email"] = "A valid email is required."
    if errors:
        raise ValidationFailed(
            "Contact information is required for this assessment.", details=errors
        )

    _check_retake(session, survey, email=email)
    name = f"{sanitize(contact['first_name'])} {sanitize(contact['last_name'])}"
    submission = _record(session, survey, answers, email=email, name=name)

    prospect = pipeline_service.record_assessment.inner(
        contact, survey.id, submission.id, now=now, session=session,
    )
    submission.prospect_id = prospect.id
    session.flush()
    return {"submission": submission, "prospect": prospect}
