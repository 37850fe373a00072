"""Survey service — survey and question authoring, results.

Question order: ``sort_order`` is unique per survey, so every renumbering
(reorder, delete) is written in two phases — first to temporary negative
values, then to the final 0..n-1 — and a partially applied write can never
leave two questions sharing a position.
"""

import logging

import sqlalchemy as sa

from coachhub.errors import (
    InvalidQuestionConfig,
    InvalidReorder,
    InvalidTransition,
    NotFound,
    ValidationFailed,
)
from coachhub.models.audit import AuditEvent
from coachhub.models.survey import Survey, SurveyOption, SurveyQuestion, SurveySubmission
from coachhub.models.user import User
from coachhub.services.question_config import (
    ChoiceConfig,
    config_for,
    parse_definition,
)
from coachhub.services.unit_of_work import unit_of_work
from coachhub.utils import parse_iso_datetime, sanitize

logger = logging.getLogger(__name__)

CONFIG_KEYS = (
    "options", "min_value", "max_value", "min_label", "max_label",
    "min_length", "max_length",
)


# ──────────────────────────────────────────────
# Internals
# ──────────────────────────────────────────────

def _get_survey(session, survey_id):
    survey = session.get(Survey, survey_id)
    if survey is None:
        raise NotFound("Survey not found.")
    return survey


def _get_question(session, question_id):
    question = session.get(SurveyQuestion, question_id)
    if question is None:
        raise NotFound("Question not found.")
    return question


def _scoring_settings(survey_type, score_mode, passing_score):
    """Normalize the scoring policy of a survey.

    Non-quiz surveys are never scored; passing_score is kept only for
    PASS_FAIL, where it is required and must be 1-100.
    """
    if survey_type not in Survey.TYPES:
        raise ValidationFailed(f"Invalid survey type '{survey_type}'.")
    if survey_type != "QUIZ":
        return "NO_SCORING", None
    score_mode = score_mode or "NO_SCORING"
    if score_mode not in Survey.SCORE_MODES:
        raise ValidationFailed(f"Invalid score mode '{score_mode}'.")
    if score_mode != "PASS_FAIL":
        return score_mode, None
    if (isinstance(passing_score, bool) or not isinstance(passing_score, int)
            or not 1 <= passing_score <= 100):
        raise ValidationFailed(
            "Passing score must be between 1 and 100 for pass/fail quizzes.",
            details={"passing_score": "Required, 1-100."},
        )
    return score_mode, passing_score


def _clean_roles(roles):
    roles = list(roles or [])
    unknown = [r for r in roles if r not in User.ROLES]
    if unknown:
        raise ValidationFailed(f"Unknown roles: {', '.join(map(str, unknown))}.")
    return roles


def _renumber(session, questions):
    """Write sort_order 0..n-1 following ``questions``' order."""
    for index, question in enumerate(questions):
        question.sort_order = -(index + 1)
    session.flush()
    for index, question in enumerate(questions):
        question.sort_order = index
    session.flush()


def _next_sort_order(session, survey_id):
    current = session.execute(
        sa.select(sa.func.max(SurveyQuestion.sort_order)).where(
            SurveyQuestion.survey_id == survey_id
        )
    ).scalar()
    return 0 if current is None else current + 1


def _apply_config(question, config):
    question.config = config.to_json()
    if isinstance(config, ChoiceConfig):
        question.options = [
            SurveyOption(text=o.text, is_correct=o.is_correct, sort_order=i)
            for i, o in enumerate(config.options)
        ]
    else:
        question.options = []


# ──────────────────────────────────────────────
# Surveys
# ──────────────────────────────────────────────

@unit_of_work
def create_survey(title, survey_type="SURVEY", description=None,
                  score_mode="NO_SCORING", passing_score=None,
                  allow_retake=False, show_results=False, is_anonymous=False,
                  is_public=False, allowed_roles=None, closes_at=None,
                  created_by_id=None, session=None):
    """Create a DRAFT survey or quiz."""
    title = sanitize(title)
    if not title:
        raise ValidationFailed("Title is required.", details={"title": "Required."})
    score_mode, passing_score = _scoring_settings(survey_type, score_mode, passing_score)

    survey = Survey(
        title=title,
        description=sanitize(description),
        survey_type=survey_type,
        score_mode=score_mode,
        passing_score=passing_score,
        allow_retake=bool(allow_retake),
        show_results=bool(show_results),
        is_anonymous=bool(is_anonymous),
        is_public=bool(is_public),
        allowed_roles=_clean_roles(allowed_roles),
        closes_at=parse_iso_datetime(closes_at),
        created_by_id=created_by_id,
        status="DRAFT",
    )
    session.add(survey)
    session.flush()
    logger.info(f"Created {survey_type} {survey.id}")
    return survey


@unit_of_work
def update_survey(survey_id, changes, session=None):
    """Partial update of survey settings (not status; see set_survey_status)."""
    survey = _get_survey(session, survey_id)

    if "title" in changes:
        title = sanitize(changes["title"])
        if not title:
            raise ValidationFailed("Title is required.", details={"title": "Required."})
        survey.title = title
    if "description" in changes:
        survey.description = sanitize(changes["description"])
    for flag in ("allow_retake", "show_results", "is_anonymous", "is_public"):
        if flag in changes:
            setattr(survey, flag, bool(changes[flag]))
    if "allowed_roles" in changes:
        survey.allowed_roles = _clean_roles(changes["allowed_roles"])
    if "closes_at" in changes:
        survey.closes_at = parse_iso_datetime(changes["closes_at"])

    if {"type", "score_mode", "passing_score"} & set(changes):
        survey_type = changes.get("type", survey.survey_type)
        score_mode = changes.get("score_mode", survey.score_mode)
        passing_score = changes.get("passing_score", survey.passing_score)
        survey.score_mode, survey.passing_score = _scoring_settings(
            survey_type, score_mode, passing_score
        )
        survey.survey_type = survey_type

    session.flush()
    return survey


@unit_of_work
def set_survey_status(survey_id, status, actor_id=None, session=None):
    """DRAFT -> PUBLISHED -> CLOSED (and re-open CLOSED -> PUBLISHED).

    Publishing requires at least one question.
    """
    survey = _get_survey(session, survey_id)
    if status not in Survey.STATUSES:
        raise ValidationFailed(f"Invalid status '{status}'.")
    if status not in Survey.VALID_TRANSITIONS.get(survey.status, []):
        raise InvalidTransition(f"Cannot move a survey from {survey.status} to {status}.")
    if status == "PUBLISHED" and not survey.questions:
        raise ValidationFailed("Add at least one question before publishing.")

    old_status = survey.status
    survey.status = status
    session.add(AuditEvent(
        actor_user_id=actor_id,
        entity_type="survey",
        entity_id=survey.id,
        action=f"survey.{status.lower()}",
        metadata_={"old_status": old_status, "new_status": status},
    ))
    session.flush()
    return survey


@unit_of_work
def delete_survey(survey_id, session=None):
    """Delete a survey with its questions, options and submissions."""
    survey = _get_survey(session, survey_id)
    session.delete(survey)
    session.flush()
    logger.info(f"Deleted survey {survey_id}")
    return survey_id


@unit_of_work
def get_survey(survey_id, session=None):
    return _get_survey(session, survey_id)


@unit_of_work
def list_surveys(status=None, survey_type=None, session=None):
    query = sa.select(Survey)
    if status:
        query = query.where(Survey.status == status)
    if survey_type:
        query = query.where(Survey.survey_type == survey_type)
    return session.execute(query.order_by(Survey.created_at.desc())).scalars().all()


# ──────────────────────────────────────────────
# Questions
# ──────────────────────────────────────────────

@unit_of_work
def add_question(survey_id, question_type, text, description=None,
                 is_required=True, config=None, session=None):
    """Append a question to a survey.

    Args:
        question_type: One of SurveyQuestion.TYPES.
        config: Type-specific settings, see question_config.parse_definition.

    Raises:
        InvalidQuestionConfig: bad type or settings.
    """
    survey = _get_survey(session, survey_id)
    text = sanitize(text)
    if not text:
        raise InvalidQuestionConfig("Question text is required.", details={"text": "Required."})
    parsed = parse_definition(question_type, config or {})

    question = SurveyQuestion(
        survey_id=survey.id,
        question_type=question_type,
        text=text,
        description=sanitize(description),
        is_required=bool(is_required),
        sort_order=_next_sort_order(session, survey.id),
    )
    _apply_config(question, parsed)
    session.add(question)
    session.flush()
    return question


@unit_of_work
def update_question(question_id, changes, session=None):
    """Partial update; type-specific settings are re-validated as a whole.

    Changing options replaces them (and their ids).
    """
    question = _get_question(session, question_id)

    if "text" in changes:
        text = sanitize(changes["text"])
        if not text:
            raise InvalidQuestionConfig("Question text is required.", details={"text": "Required."})
        question.text = text
    if "description" in changes:
        question.description = sanitize(changes["description"])
    if "is_required" in changes:
        question.is_required = bool(changes["is_required"])

    new_type = changes.get("type", question.question_type)
    if new_type != question.question_type or any(k in changes for k in CONFIG_KEYS):
        current = config_for(question)
        data = {}
        if isinstance(current, ChoiceConfig):
            data["options"] = [
                {"text": o.text, "is_correct": o.is_correct} for o in current.options
            ]
        else:
            data.update(current.to_json())
        data.update({k: changes[k] for k in CONFIG_KEYS if k in changes})
        parsed = parse_definition(new_type, data)
        question.question_type = new_type
        _apply_config(question, parsed)

    session.flush()
    return question


@unit_of_work
def delete_question(question_id, session=None):
    """Delete a question and close the gap in the ordering."""
    question = _get_question(session, question_id)
    survey = question.survey
    session.delete(question)
    session.flush()
    session.expire(survey, ["questions"])
    _renumber(session, list(survey.questions))
    return question_id


@unit_of_work
def duplicate_question(question_id, session=None):
    """Append a copy of a question (text suffixed "(Copy)") to its survey."""
    original = _get_question(session, question_id)
    copy = SurveyQuestion(
        survey_id=original.survey_id,
        question_type=original.question_type,
        text=f"{original.text} (Copy)",
        description=original.description,
        is_required=original.is_required,
        sort_order=_next_sort_order(session, original.survey_id),
        config=dict(original.config or {}),
    )
    copy.options = [
        SurveyOption(text=o.text, is_correct=o.is_correct, sort_order=o.sort_order)
        for o in original.options
    ]
    session.add(copy)
    session.flush()
    return copy


@unit_of_work
def reorder_questions(survey_id, ordered_ids, session=None):
    """Rewrite sort_order so the questions follow ``ordered_ids``.

    Raises:
        InvalidReorder: ``ordered_ids`` is not exactly the survey's
            question ids, each once.
    """
    survey = _get_survey(session, survey_id)
    by_id = {q.id: q for q in survey.questions}
    ordered_ids = list(ordered_ids or [])
    if len(ordered_ids) != len(set(ordered_ids)) or set(ordered_ids) != set(by_id):
        raise InvalidReorder(
            details={
                "missing": sorted(set(by_id) - set(ordered_ids)),
                "unknown": sorted(set(ordered_ids) - set(by_id)),
            }
        )
    _renumber(session, [by_id[qid] for qid in ordered_ids])
    session.expire(survey, ["questions"])
    return survey


# ──────────────────────────────────────────────
# Results
# ──────────────────────────────────────────────

@unit_of_work
def get_survey_results(survey_id, session=None):
    """Aggregate the submissions of a survey.

    Returns:
        dict with ``submission_count``, ``average_score`` and
        ``pass_rate`` (None when not applicable), and per-question
        ``questions`` stats: option counts for choice questions, the
        average for Likert questions, responses for text questions.
    """
    survey = _get_survey(session, survey_id)
    submissions = survey.submissions.order_by(SurveySubmission.submitted_at).all()

    scores = [s.score_percentage for s in submissions if s.score_percentage is not None]
    judged = [s.passed for s in submissions if s.passed is not None]

    questions = []
    for question in survey.questions:
        answers = [
            s.answers[question.id] for s in submissions
            if (s.answers or {}).get(question.id) is not None
        ]
        stats = {
            "question_id": question.id,
            "type": question.question_type,
            "text": question.text,
            "answered": len(answers),
        }
        if question.is_choice:
            counts = {o.id: 0 for o in question.options}
            for answer in answers:
                for option_id in ([answer] if isinstance(answer, str) else answer):
                    if option_id in counts:
                        counts[option_id] += 1
            stats["options"] = [
                {"id": o.id, "text": o.text, "is_correct": o.is_correct, "count": counts[o.id]}
                for o in question.options
            ]
        elif question.question_type == "LIKERT_SCALE":
            stats["average"] = round(sum(answers) / len(answers), 2) if answers else None
        else:
            stats["responses"] = answers
        questions.append(stats)

    return {
        "survey_id": survey.id,
        "submission_count": len(submissions),
        "average_score": round(sum(scores) / len(scores), 1) if scores else None,
        "pass_rate": (
            round(100 * sum(1 for p in judged if p) / len(judged), 1) if judged else None
        ),
        "questions": questions,
    }
