"""Surveys blueprint — /surveys/*

Survey and quiz authoring (admin) and signed-in submissions.

Route Map:
  GET    /surveys                              — List (?status=&type=)
  POST   /surveys                              — Create DRAFT survey/quiz
  GET    /surveys/<id>                         — Survey + questions
  PATCH  /surveys/<id>                         — Update settings
  POST   /surveys/<id>/status                  — Publish / close / re-open
  DELETE /surveys/<id>                         — Delete
  POST   /surveys/<id>/questions               — Add question
  PUT    /surveys/<id>/questions/order         — Reorder questions
  PATCH  /surveys/questions/<question_id>      — Update question
  DELETE /surveys/questions/<question_id>      — Delete question
  POST   /surveys/questions/<question_id>/copy — Duplicate question
  GET    /surveys/<id>/results                 — Aggregated results
  GET    /surveys/<id>/take                    — Survey for respondents (login)
  POST   /surveys/<id>/submit                  — Submit answers (login)
"""

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required

from coachhub.decorators import admin_required
from coachhub.extensions import limiter
from coachhub.services import submission_service, survey_service

logger = logging.getLogger(__name__)

surveys_bp = Blueprint("surveys", __name__, url_prefix="/surveys")


def _body():
    return request.get_json(silent=True) or {}


def respondent_view(survey):
    """Survey payload for respondents: correct answers are hidden."""
    data = survey.to_dict(include_questions=True)
    for question in data["questions"]:
        for option in question["options"]:
            option.pop("is_correct", None)
    return data


def submission_result(survey, submission):
    """What a respondent sees after submitting."""
    result = {"submission_id": submission.id}
    if survey.show_results and submission.score_percentage is not None:
        result["score_percentage"] = submission.score_percentage
        if submission.passed is not None:
            result["passed"] = submission.passed
    return result


# ══════════════════════════════════════════════
#  AUTHORING
# ══════════════════════════════════════════════

@surveys_bp.route("")
@admin_required
def list_surveys():
    rows, _ = survey_service.list_surveys(
        status=request.args.get("status") or None,
        survey_type=request.args.get("type") or None,
    )
    return jsonify(ok=True, surveys=[s.to_dict() for s in rows])


@surveys_bp.route("", methods=["POST"])
@admin_required
def create_survey():
    data = _body()
    survey, error = survey_service.create_survey(
        data.get("title"),
        survey_type=data.get("type") or "SURVEY",
        description=data.get("description"),
        score_mode=data.get("score_mode") or "NO_SCORING",
        passing_score=data.get("passing_score"),
        allow_retake=data.get("allow_retake", False),
        show_results=data.get("show_results", False),
        is_anonymous=data.get("is_anonymous", False),
        is_public=data.get("is_public", False),
        allowed_roles=data.get("allowed_roles"),
        closes_at=data.get("closes_at"),
        created_by_id=current_user.id,
    )
    if error:
        return error.to_response()
    return jsonify(ok=True, survey=survey.to_dict(include_questions=True)), 201


@surveys_bp.route("/<survey_id>")
@admin_required
def survey_detail(survey_id):
    survey, error = survey_service.get_survey(survey_id)
    if error:
        return error.to_response()
    return jsonify(ok=True, survey=survey.to_dict(include_questions=True))


@surveys_bp.route("/<survey_id>", methods=["PATCH"])
@admin_required
def update_survey(survey_id):
    survey, error = survey_service.update_survey(survey_id, _body())
    if error:
        return error.to_response()
    return jsonify(ok=True, survey=survey.to_dict(include_questions=True))


@surveys_bp.route("/<survey_id>/status", methods=["POST"])
@admin_required
def set_status(survey_id):
    survey, error = survey_service.set_survey_status(
        survey_id, _body().get("status"), actor_id=current_user.id,
    )
    if error:
        return error.to_response()
    return jsonify(ok=True, survey=survey.to_dict())


@surveys_bp.route("/<survey_id>", methods=["DELETE"])
@admin_required
def delete_survey(survey_id):
    _, error = survey_service.delete_survey(survey_id)
    if error:
        return error.to_response()
    return jsonify(ok=True)


# --- Questions ---

@surveys_bp.route("/<survey_id>/questions", methods=["POST"])
@admin_required
def add_question(survey_id):
    data = _body()
    question, error = survey_service.add_question(
        survey_id,
        data.get("type"),
        data.get("text"),
        description=data.get("description"),
        is_required=data.get("is_required", True),
        config=data.get("config"),
    )
    if error:
        return error.to_response()
    return jsonify(ok=True, question=question.to_dict()), 201


@surveys_bp.route("/<survey_id>/questions/order", methods=["PUT"])
@admin_required
def reorder_questions(survey_id):
    survey, error = survey_service.reorder_questions(
        survey_id, _body().get("question_ids"),
    )
    if error:
        return error.to_response()
    return jsonify(ok=True, questions=[q.to_dict() for q in survey.questions])


@surveys_bp.route("/questions/<question_id>", methods=["PATCH"])
@admin_required
def update_question(question_id):
    question, error = survey_service.update_question(question_id, _body())
    if error:
        return error.to_response()
    return jsonify(ok=True, question=question.to_dict())


@surveys_bp.route("/questions/<question_id>", methods=["DELETE"])
@admin_required
def delete_question(question_id):
    _, error = survey_service.delete_question(question_id)
    if error:
        return error.to_response()
    return jsonify(ok=True)


@surveys_bp.route("/questions/<question_id>/copy", methods=["POST"])
@admin_required
def duplicate_question(question_id):
    question, error = survey_service.duplicate_question(question_id)
    if error:
        return error.to_response()
    return jsonify(ok=True, question=question.to_dict()), 201


@surveys_bp.route("/<survey_id>/results")
@admin_required
def results(survey_id):
    data, error = survey_service.get_survey_results(survey_id)
    if error:
        return error.to_response()
    return jsonify(ok=True, **data)


# ══════════════════════════════════════════════
#  RESPONDENTS
# ══════════════════════════════════════════════

@surveys_bp.route("/<survey_id>/take")
@login_required
def take_survey(survey_id):
    survey, error = submission_service.get_survey_for_respondent(
        survey_id, current_user
    )
    if error:
        return error.to_response()
    return jsonify(ok=True, survey=respondent_view(survey))


@surveys_bp.route("/<survey_id>/submit", methods=["POST"])
@login_required
@limiter.limit("30 per minute")
def submit(survey_id):
    submission, error = submission_service.submit_survey(
        survey_id, _body().get("answers"), current_user,
    )
    if error:
        return error.to_response()
    return jsonify(ok=True, **submission_result(submission.survey, submission)), 201
