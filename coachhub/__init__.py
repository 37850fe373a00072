import os
import logging

import click
from flask import Flask, jsonify
from flask_wtf.csrf import CSRFError
from werkzeug.security import generate_password_hash

from coachhub.config import config_by_name
from coachhub.errors import OnboardingError
from coachhub.extensions import db, migrate, login_manager, csrf, limiter


def create_app(config_name=None):
    """Application factory."""

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    csrf.init_app(app)
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from coachhub import models  # noqa: F401

    # --- Register blueprints ---
    from coachhub.blueprints.auth import auth_bp
    from coachhub.blueprints.admin import admin_bp
    from coachhub.blueprints.calendars import calendars_bp
    from coachhub.blueprints.surveys import surveys_bp
    from coachhub.blueprints.public import public_bp
    from coachhub.blueprints.webhooks import webhooks_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(calendars_bp)
    app.register_blueprint(surveys_bp)
    app.register_blueprint(public_bp)
    app.register_blueprint(webhooks_bp)

    # Exempt webhooks from CSRF — raw body needed for Stripe signature verification
    csrf.exempt(webhooks_bp)
    # Exempt token-addressed prospect forms (no session to bind a token to)
    csrf.exempt(public_bp)

    @app.route("/health")
    def health():
        return jsonify(ok=True)

    # --- Error handlers (JSON API) ---
    def _error(code, message, status):
        return jsonify(ok=False, error=code, message=message), status

    @app.errorhandler(OnboardingError)
    def onboarding_error(e):
        return e.to_response()

    @app.errorhandler(CSRFError)
    def csrf_error(e):
        return _error("csrf_failed", e.description, 400)

    @app.errorhandler(400)
    def bad_request(e):
        return _error("bad_request", "Bad request.", 400)

    @app.errorhandler(403)
    def forbidden(e):
        return _error("forbidden", "You do not have access to this resource.", 403)

    @app.errorhandler(404)
    def not_found(e):
        return _error("not_found", "Not found.", 404)

    @app.errorhandler(405)
    def method_not_allowed(e):
        return _error("method_not_allowed", "Method not allowed.", 405)

    @app.errorhandler(429)
    def too_many_requests(e):
        return _error("rate_limited", "Too many requests. Slow down.", 429)

    @app.errorhandler(500)
    def server_error(e):
        return _error("server_error", "Something went wrong.", 500)

    # --- CLI commands ---
    register_cli(app)

    # --- Security headers ---
    @app.after_request
    def add_security_headers(response):
        """Add security headers to every response."""
        # Prevent MIME type sniffing
        response.headers["X-Content-Type-Options"] = "nosniff"
        # Prevent clickjacking
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = (
            "default-src 'none'; frame-ancestors 'none';"
        )
        # Strict Transport Security (only in production)
        if not app.debug:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )
        return response

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("seed-admin")
    @click.option("--email", default="admin@coachhub.local", help="Admin email")
    @click.option("--password", default="admin123", help="Admin password")
    @click.option("--name", default="Admin", help="Admin full name")
    def seed_admin(email, password, name):
        """Create (or promote) an admin user.

        Usage:
            flask seed-admin
            flask seed-admin --email admin@example.com --password s3cret
        """
        from coachhub.models.user import User

        email = email.lower().strip()
        existing = User.query.filter_by(email=email).first()
        if existing:
            if existing.role != "ADMIN":
                existing.role = "ADMIN"
                db.session.commit()
                click.echo(f"Promoted existing user to admin: {email}")
            else:
                click.echo(f"Admin user already exists: {email}")
            return

        admin = User(
            email=email,
            password_hash=generate_password_hash(password),
            full_name=name,
            role="ADMIN",
        )
        db.session.add(admin)
        db.session.commit()
        click.echo(f"Created admin user: {email}")

    @app.cli.command("seed-orientation-calendar")
    @click.option("--meeting-link", default=None, help="Shared video meeting link")
    def seed_orientation_calendar(meeting_link):
        """Create the orientation calendar with its default weekly slots.

        Usage:
            flask seed-orientation-calendar
            flask seed-orientation-calendar --meeting-link https://meet.example.com/abc
        """
        from coachhub.services import availability_service

        calendar, error = availability_service.get_or_create_orientation_calendar()
        if error:
            raise click.ClickException(error.message)
        if meeting_link:
            calendar, error = availability_service.update_meeting_link(
                calendar.id, meeting_link
            )
            if error:
                raise click.ClickException(error.message)

        click.echo("")
        click.echo("=" * 60)
        click.echo(f"  Calendar:  {calendar.name} (id: {calendar.id})")
        click.echo(f"  Slug:      {calendar.slug}")
        click.echo(f"  Link:      {calendar.meeting_link or '(not set)'}")
        for slot in calendar.slots:
            day = slot.specific_date or slot.DAY_NAMES[slot.day_of_week]
            click.echo(f"  Slot:      {day} {slot.start_time}-{slot.end_time} {slot.timezone}")
        click.echo("=" * 60)
