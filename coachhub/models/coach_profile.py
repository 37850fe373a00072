"""Coach profile model.

Created when a prospect who has paid the program fee is turned into a
coach account. Carries over the profile data the prospect supplied in
the business development form.
"""

import uuid

from coachhub.extensions import db


class CoachProfile(db.Model):
    __tablename__ = "coach_profiles"

    STATUSES = ["ONBOARDING_INCOMPLETE", "ACTIVE", "INACTIVE"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), unique=True, nullable=False
    )
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False)
    phone = db.Column(db.String(50), nullable=True)
    company_name = db.Column(db.String(255), nullable=True)
    bio = db.Column(db.Text, nullable=True)
    vision_statement = db.Column(db.Text, nullable=True)
    mission_statement = db.Column(db.Text, nullable=True)
    coach_status = db.Column(
        db.String(50), default="ONBOARDING_INCOMPLETE", nullable=False
    )
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    user = db.relationship("User", back_populates="coach_profile")

    def __repr__(self):
        return f"<CoachProfile {self.first_name} {self.last_name}>"
