"""Audit event model.

Logs significant actions (pipeline transitions, account creation, payment
approvals, survey publishing, etc.) for the admin activity feed.
"""

import uuid

from coachhub.extensions import db


class AuditEvent(db.Model):
    __tablename__ = "audit_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    actor_user_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=True
    )
    entity_type = db.Column(db.String(50), nullable=True)  # e.g. "prospect"
    entity_id = db.Column(db.String(36), nullable=True, index=True)
    action = db.Column(db.String(255), nullable=False)  # e.g. "prospect.approved"
    metadata_ = db.Column(
        "metadata", db.JSON, default=dict
    )  # extra context, named metadata_ to avoid the declarative attribute clash
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    actor = db.relationship("User", back_populates="audit_events")

    def __repr__(self):
        return f"<AuditEvent {self.action}>"
