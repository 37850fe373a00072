"""User model.

Login-capable accounts for admins, coaches and ambassadors.
Flask-Login integration via UserMixin.
"""

import uuid

from flask_login import UserMixin

from coachhub.extensions import db


class User(UserMixin, db.Model):
    __tablename__ = "users"

    ROLES = ["ADMIN", "COACH", "AMBASSADOR"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    full_name = db.Column(db.String(255))
    role = db.Column(db.String(20), default="COACH", nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    # set for accounts issued with a generated temporary password
    must_change_password = db.Column(db.Boolean, default=False)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    coach_profile = db.relationship(
        "CoachProfile", back_populates="user", uselist=False
    )
    audit_events = db.relationship(
        "AuditEvent", back_populates="actor", lazy="dynamic"
    )

    @property
    def is_admin(self):
        return self.role == "ADMIN"

    def __repr__(self):
        return f"<User {self.email} ({self.role})>"
