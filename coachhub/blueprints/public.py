"""Public blueprint — /public/*

Token-addressed forms sent to prospects, plus public assessments.
No login. CSRF-exempt (registered in create_app). Rate-limited.

Route Map:
  GET  /public/surveys/<id>                          — Public assessment survey
  POST /public/surveys/<id>/submit                   — Submit assessment + contact
  GET  /public/assessment/<token>                    — Prospect-specific assessment link
  POST /public/assessment/<token>                    — Submit via that link
  GET  /public/business-form/<token>                 — Business form state
  POST /public/business-form/<token>                 — Submit business form
  GET  /public/accept/<token>                        — Acceptance letter + fee
  POST /public/accept/<token>                        — Accept terms
  POST /public/accept/<token>/checkout               — Start Stripe Checkout
  POST /public/accept/<token>/manual-payment         — Report offline payment
  GET  /public/accept/<token>/payment-success        — Payment state after checkout
"""

import logging

from flask import Blueprint, jsonify, request

from coachhub.blueprints.surveys import respondent_view, submission_result
from coachhub.errors import SurveyUnavailable
from coachhub.extensions import limiter
from coachhub.services import (
    payment_service,
    pipeline_service,
    stripe_service,
    submission_service,
    survey_service,
)

logger = logging.getLogger(__name__)

public_bp = Blueprint("public", __name__, url_prefix="/public")


def _body():
    return request.get_json(silent=True) or {}


def _public_prospect(prospect):
    """Only what the prospect needs to see about themselves."""
    return {
        "first_name": prospect.first_name,
        "last_name": prospect.last_name,
        "status": prospect.status,
    }


def _payment_state(prospect):
    amount, currency = payment_service.program_fee()
    payment = prospect.payment
    return {
        "amount": str(amount),
        "currency": currency,
        "status": payment.status if payment else None,
        "method": payment.method if payment else None,
        "failure_reason": payment.failure_reason if payment else None,
    }


# ══════════════════════════════════════════════
#  ASSESSMENTS
# ══════════════════════════════════════════════

def _public_survey(survey_id):
    survey, error = survey_service.get_survey(survey_id)
    if error:
        return None, SurveyUnavailable("Survey not found or not available.")
    if not survey.is_public or survey.status != "PUBLISHED":
        return None, SurveyUnavailable("Survey not found or not available.")
    return survey, None


@public_bp.route("/surveys/<survey_id>")
@limiter.limit("60 per minute")
def public_survey(survey_id):
    survey, error = _public_survey(survey_id)
    if error:
        return error.to_response()
    return jsonify(ok=True, survey=respondent_view(survey))


@public_bp.route("/surveys/<survey_id>/submit", methods=["POST"])
@limiter.limit("10 per minute")
def submit_public_survey(survey_id):
    """Body: {"answers": {...}, "contact": {first_name, last_name, email, ...}}."""
    data = _body()
    result, error = submission_service.submit_assessment(
        survey_id, data.get("answers"), data.get("contact"),
    )
    if error:
        return error.to_response()
    submission = result["submission"]
    return jsonify(ok=True, **submission_result(submission.survey, submission)), 201


@public_bp.route("/assessment/<token>")
@limiter.limit("30 per minute")
def assessment(token):
    prospect, error = pipeline_service.get_prospect_by_token(token, "assessment")
    if error:
        return error.to_response()
    return jsonify(ok=True, prospect=_public_prospect(prospect))


@public_bp.route("/assessment/<token>", methods=["POST"])
@limiter.limit("10 per minute")
def submit_assessment(token):
    """Body: {"survey_id", "answers"}. Contact comes from the prospect."""
    prospect, error = pipeline_service.get_prospect_by_token(token, "assessment")
    if error:
        return error.to_response()
    data = _body()
    contact = {
        "first_name": prospect.first_name,
        "last_name": prospect.last_name,
        "email": prospect.email,
        "phone": prospect.phone,
        "phone_country_code": prospect.phone_country_code,
        "referrer_name": prospect.referrer_name,
    }
    result, error = submission_service.submit_assessment(
        data.get("survey_id"), data.get("answers"), contact,
    )
    if error:
        return error.to_response()
    submission = result["submission"]
    return jsonify(
        ok=True,
        prospect=_public_prospect(result["prospect"]),
        **submission_result(submission.survey, submission),
    ), 201


# ══════════════════════════════════════════════
#  BUSINESS FORM
# ══════════════════════════════════════════════

@public_bp.route("/business-form/<token>")
@limiter.limit("30 per minute")
def business_form(token):
    prospect, error = pipeline_service.get_prospect_by_token(token, "business")
    if error:
        return error.to_response()
    return jsonify(
        ok=True,
        prospect=_public_prospect(prospect),
        submitted=prospect.business_form_submitted_at is not None,
        service_choices=list(pipeline_service.SERVICE_CHOICES),
    )


@public_bp.route("/business-form/<token>", methods=["POST"])
@limiter.limit("10 per minute")
def submit_business_form(token):
    prospect, error = pipeline_service.submit_business_form(token, _body())
    if error:
        return error.to_response()
    return jsonify(ok=True, prospect=_public_prospect(prospect))


# ══════════════════════════════════════════════
#  ACCEPTANCE & PAYMENT
# ══════════════════════════════════════════════

@public_bp.route("/accept/<token>")
@limiter.limit("30 per minute")
def acceptance(token):
    prospect, error = pipeline_service.get_prospect_by_token(token, "acceptance")
    if error:
        return error.to_response()
    return jsonify(
        ok=True,
        prospect=_public_prospect(prospect),
        terms_accepted=prospect.terms_accepted_at is not None,
        payment=_payment_state(prospect),
    )


@public_bp.route("/accept/<token>", methods=["POST"])
@limiter.limit("10 per minute")
def accept_terms(token):
    data = _body()
    prospect, error = pipeline_service.accept_terms(
        token,
        data.get("terms_accepted"),
        data.get("privacy_accepted"),
        data.get("non_refund_acknowledged"),
    )
    if error:
        return error.to_response()
    return jsonify(ok=True, prospect=_public_prospect(prospect))


@public_bp.route("/accept/<token>/checkout", methods=["POST"])
@limiter.limit("10 per minute")
def checkout(token):
    url, error = stripe_service.create_checkout_session(token)
    if error:
        return error.to_response()
    return jsonify(ok=True, checkout_url=url)


@public_bp.route("/accept/<token>/manual-payment", methods=["POST"])
@limiter.limit("10 per minute")
def manual_payment(token):
    """Body: {"reference"}. An admin approves or rejects it later."""
    payment, error = payment_service.record_manual_payment(
        token, _body().get("reference"),
    )
    if error:
        return error.to_response()
    return jsonify(ok=True, payment=payment.to_dict()), 201


@public_bp.route("/accept/<token>/payment-success")
@limiter.limit("30 per minute")
def payment_success(token):
    """Landing after Checkout. The webhook, not this page, completes the payment."""
    prospect, error = pipeline_service.get_prospect_by_token(token, "acceptance")
    if error:
        return error.to_response()
    return jsonify(
        ok=True,
        prospect=_public_prospect(prospect),
        payment=_payment_state(prospect),
    )
