"""Auth blueprint — /auth/*

Session login for admins, coaches and ambassadors. JSON in, JSON out.

Route Map:
  GET  /auth/csrf-token       — CSRF token for the X-CSRFToken header
  POST /auth/login            — Email + password login
  POST /auth/logout           — End the session
  GET  /auth/me               — Current user
  POST /auth/change-password  — Replace a (temporary) password
"""

import logging

from flask import Blueprint, jsonify, request
from flask_login import current_user, login_required, login_user, logout_user
from flask_wtf.csrf import generate_csrf
from werkzeug.security import check_password_hash, generate_password_hash

from coachhub.extensions import db, limiter
from coachhub.models.audit import AuditEvent
from coachhub.models.user import User
from coachhub.services import account_service

logger = logging.getLogger(__name__)

auth_bp = Blueprint("auth", __name__, url_prefix="/auth")

MIN_PASSWORD_LENGTH = account_service.MIN_PASSWORD_LENGTH


def _user_dict(user):
    return {
        "id": user.id,
        "email": user.email,
        "full_name": user.full_name,
        "role": user.role,
        "must_change_password": bool(user.must_change_password),
    }


def _fail(message, status, error="invalid_credentials"):
    return jsonify(ok=False, error=error, message=message), status


@auth_bp.route("/csrf-token")
def csrf_token():
    return jsonify(ok=True, csrf_token=generate_csrf())


# ──────────────────────────────────────────────
# POST /auth/login
# ──────────────────────────────────────────────

@auth_bp.route("/login", methods=["POST"])
@limiter.limit("15 per minute")
def login():
    """Standard email + password login."""
    data = request.get_json(silent=True) or {}
    email = (data.get("email") or "").lower().strip()
    password = data.get("password") or ""

    if not email or not password:
        return _fail("Email and password are required.", 400, "validation_failed")

    user = User.query.filter_by(email=email).first()
    if user is None or not check_password_hash(user.password_hash, password):
        logger.info(f"Failed login for {email}")
        return _fail("Invalid email or password.", 401)

    if not user.is_active:
        return _fail("Your account has been deactivated.", 403, "account_inactive")

    login_user(user, remember=bool(data.get("remember")))
    return jsonify(ok=True, user=_user_dict(user))


@auth_bp.route("/logout", methods=["POST"])
def logout():
    logout_user()
    return jsonify(ok=True)


@auth_bp.route("/me")
@login_required
def me():
    return jsonify(ok=True, user=_user_dict(current_user))


# ──────────────────────────────────────────────
# POST /auth/change-password
# ──────────────────────────────────────────────

@auth_bp.route("/change-password", methods=["POST"])
@login_required
@limiter.limit("10 per minute")
def change_password():
    """Accounts created from a prospect start with a temporary password
    and ``must_change_password`` set; this clears it."""
    data = request.get_json(silent=True) or {}
    current_password = data.get("current_password") or ""
    new_password = data.get("new_password") or ""

    if not check_password_hash(current_user.password_hash, current_password):
        return _fail("Current password is incorrect.", 401)
    if len(new_password) < MIN_PASSWORD_LENGTH:
        return _fail(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters.",
            422,
            "validation_failed",
        )

    current_user.password_hash = generate_password_hash(new_password)
    current_user.must_change_password = False
    db.session.add(AuditEvent(
        actor_user_id=current_user.id,
        entity_type="user",
        entity_id=current_user.id,
        action="user.password_changed",
        metadata_={},
    ))
    db.session.commit()
    return jsonify(ok=True, user=_user_dict(current_user))
