"""Admin blueprint — /admin/*

Prospect pipeline and payment approvals. JSON in, JSON out.
All routes protected by @admin_required decorator.

Route Map:
  GET  /admin/stats                                   — Count per pipeline status
  GET  /admin/prospects                               — Pipeline list (?status=&search=)
  POST /admin/prospects                               — Add prospect manually
  GET  /admin/prospects/<id>                          — Prospect detail + history
  POST /admin/prospects/<id>/orientation              — Book orientation slot
  POST /admin/prospects/<id>/orientation/complete     — Mark orientation done
  POST /admin/prospects/<id>/business-form-token      — Issue business form link
  POST /admin/prospects/<id>/interview                — Schedule interview
  POST /admin/prospects/<id>/interview/complete       — Record interview result
  POST /admin/prospects/<id>/acceptance-token         — Issue acceptance link
  POST /admin/prospects/<id>/account                  — Create coach account
  POST /admin/prospects/<id>/reject                   — Reject prospect
  POST /admin/prospects/<id>/payment/approve          — Approve manual payment
  POST /admin/prospects/<id>/payment/reject           — Reject manual payment
  GET  /admin/audit                                   — Recent audit events
"""

import logging

from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user

from coachhub.decorators import admin_required
from coachhub.models.audit import AuditEvent
from coachhub.services import payment_service, pipeline_service
from coachhub.utils import parse_iso_datetime

logger = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


def _body():
    return request.get_json(silent=True) or {}


def _form_url(path, token):
    return f"{current_app.config['APP_BASE_URL']}/{path}/{token}"


def _prospect_detail(prospect):
    data = prospect.to_dict()
    data["history"] = [h.to_dict() for h in prospect.status_history]
    data["payment"] = prospect.payment.to_dict() if prospect.payment else None
    data["bookings"] = [b.to_dict() for b in prospect.bookings]
    if prospect.business_form_token:
        data["business_form_url"] = _form_url("business-form", prospect.business_form_token)
    if prospect.acceptance_token:
        data["acceptance_url"] = _form_url("accept", prospect.acceptance_token)
    return data


def _prospect_response(prospect, status=200):
    return jsonify(ok=True, prospect=_prospect_detail(prospect)), status


# ══════════════════════════════════════════════
#  PIPELINE OVERVIEW
# ══════════════════════════════════════════════

@admin_bp.route("/stats")
@admin_required
def stats():
    """Pipeline counts per status."""
    data, _ = pipeline_service.get_pipeline_stats()
    return jsonify(ok=True, **data)


@admin_bp.route("/prospects")
@admin_required
def prospects():
    """Prospect list, filterable by status and a name/email search."""
    status = request.args.get("status") or None
    search = request.args.get("search") or None
    rows, _ = pipeline_service.list_prospects(status=status, search=search)
    return jsonify(ok=True, prospects=[p.to_dict() for p in rows])


@admin_bp.route("/prospects", methods=["POST"])
@admin_required
def create_prospect():
    """Manually add a prospect (ASSESSMENT_PENDING unless told otherwise)."""
    data = _body()
    prospect, error = pipeline_service.create_manual_prospect(
        data.get("first_name"),
        data.get("last_name"),
        data.get("email"),
        phone=data.get("phone"),
        referrer_name=data.get("referrer_name"),
        status=data.get("status") or "ASSESSMENT_PENDING",
        actor_id=current_user.id,
    )
    if error:
        return error.to_response()
    return _prospect_response(prospect, 201)


@admin_bp.route("/prospects/<prospect_id>")
@admin_required
def prospect_detail(prospect_id):
    prospect, error = pipeline_service.get_prospect(prospect_id)
    if error:
        return error.to_response()
    return _prospect_response(prospect)


# ══════════════════════════════════════════════
#  PIPELINE STEPS
# ══════════════════════════════════════════════

@admin_bp.route("/prospects/<prospect_id>/orientation", methods=["POST"])
@admin_required
def schedule_orientation(prospect_id):
    """Book an orientation occurrence: {"slot_id", "date": "YYYY-MM-DD"}."""
    data = _body()
    result, error = pipeline_service.schedule_orientation(
        prospect_id,
        data.get("slot_id"),
        data.get("date"),
        actor_id=current_user.id,
    )
    if error:
        return error.to_response()
    return jsonify(
        ok=True,
        prospect=_prospect_detail(result["prospect"]),
        booking=result["booking"].to_dict(),
        meeting_link=result["meeting_link"],
    )


@admin_bp.route("/prospects/<prospect_id>/orientation/complete", methods=["POST"])
@admin_required
def complete_orientation(prospect_id):
    prospect, error = pipeline_service.complete_orientation(
        prospect_id, notes=_body().get("notes"), actor_id=current_user.id,
    )
    if error:
        return error.to_response()
    return _prospect_response(prospect)


@admin_bp.route("/prospects/<prospect_id>/business-form-token", methods=["POST"])
@admin_required
def business_form_token(prospect_id):
    """Issue (or return the already issued) business form link."""
    token, error = pipeline_service.generate_business_form_token(
        prospect_id, actor_id=current_user.id,
    )
    if error:
        return error.to_response()
    return jsonify(ok=True, token=token, url=_form_url("business-form", token))


@admin_bp.route("/prospects/<prospect_id>/interview", methods=["POST"])
@admin_required
def schedule_interview(prospect_id):
    """Schedule the interview: {"scheduled_at": ISO-8601, "notes"}."""
    data = _body()
    prospect, error = pipeline_service.schedule_interview(
        prospect_id,
        parse_iso_datetime(data.get("scheduled_at")),
        notes=data.get("notes"),
        actor_id=current_user.id,
    )
    if error:
        return error.to_response()
    return _prospect_response(prospect)


@admin_bp.route("/prospects/<prospect_id>/interview/complete", methods=["POST"])
@admin_required
def complete_interview(prospect_id):
    """Record the interview outcome: {"result": APPROVED|REJECTED, "notes"}."""
    data = _body()
    prospect, error = pipeline_service.complete_interview(
        prospect_id,
        data.get("result"),
        notes=data.get("notes"),
        actor_id=current_user.id,
    )
    if error:
        return error.to_response()
    return _prospect_response(prospect)


@admin_bp.route("/prospects/<prospect_id>/acceptance-token", methods=["POST"])
@admin_required
def acceptance_token(prospect_id):
    """Issue (or return the already issued) acceptance letter link."""
    token, error = pipeline_service.generate_acceptance_token(
        prospect_id, actor_id=current_user.id,
    )
    if error:
        return error.to_response()
    return jsonify(ok=True, token=token, url=_form_url("accept", token))


@admin_bp.route("/prospects/<prospect_id>/account", methods=["POST"])
@admin_required
def create_account(prospect_id):
    """Create the coach account.

    Takes an optional ``password``. Without one a temporary password is
    generated and shown only in this response.
    """
    result, error = pipeline_service.create_coach_from_prospect(
        prospect_id, password=_body().get("password"), actor_id=current_user.id,
    )
    if error:
        return error.to_response()
    user = result["user"]
    payload = {
        "ok": True,
        "prospect": _prospect_detail(result["prospect"]),
        "user": {"id": user.id, "email": user.email, "role": user.role},
    }
    if result["temporary_password"]:
        payload["temporary_password"] = result["temporary_password"]
    return jsonify(payload), 201


@admin_bp.route("/prospects/<prospect_id>/reject", methods=["POST"])
@admin_required
def reject(prospect_id):
    prospect, error = pipeline_service.reject_prospect(
        prospect_id, notes=_body().get("notes"), actor_id=current_user.id,
    )
    if error:
        return error.to_response()
    return _prospect_response(prospect)


# ══════════════════════════════════════════════
#  PAYMENTS
# ══════════════════════════════════════════════

@admin_bp.route("/prospects/<prospect_id>/payment/approve", methods=["POST"])
@admin_required
def approve_payment(prospect_id):
    payment, error = payment_service.approve_manual_payment(
        prospect_id, actor_id=current_user.id,
    )
    if error:
        return error.to_response()
    return jsonify(ok=True, payment=payment.to_dict())


@admin_bp.route("/prospects/<prospect_id>/payment/reject", methods=["POST"])
@admin_required
def reject_payment(prospect_id):
    payment, error = payment_service.reject_manual_payment(
        prospect_id, reason=_body().get("reason"), actor_id=current_user.id,
    )
    if error:
        return error.to_response()
    return jsonify(ok=True, payment=payment.to_dict())


# ══════════════════════════════════════════════
#  AUDIT LOG
# ══════════════════════════════════════════════

@admin_bp.route("/audit")
@admin_required
def audit_log():
    """Most recent audit events, optionally for one entity."""
    query = AuditEvent.query
    entity_id = request.args.get("entity_id")
    if entity_id:
        query = query.filter_by(entity_id=entity_id)
    events = query.order_by(AuditEvent.created_at.desc()).limit(100).all()
    return jsonify(ok=True, events=[
        {
            "id": e.id,
            "action": e.action,
            "entity_type": e.entity_type,
            "entity_id": e.entity_id,
            "actor_user_id": e.actor_user_id,
            "metadata": e.metadata_ or {},
            "created_at": e.created_at.isoformat() if e.created_at else None,
        }
        for e in events
    ])
