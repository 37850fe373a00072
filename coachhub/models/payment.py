"""Prospect payment model.

One row per prospect for the coach program fee. Paid either through a
Stripe Checkout session (completed by webhook) or manually (bank transfer,
cheque) and approved by an admin.
"""

import uuid

from coachhub.extensions import db


class ProspectPayment(db.Model):
    __tablename__ = "prospect_payments"

    METHODS = ["STRIPE", "MANUAL"]
    STATUSES = ["PENDING", "COMPLETED", "FAILED"]

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    prospect_id = db.Column(
        db.String(36),
        db.ForeignKey("prospects.id"),
        unique=True,
        nullable=False,
    )
    method = db.Column(db.String(20), nullable=False)  # STRIPE | MANUAL
    amount = db.Column(db.Numeric(10, 2), nullable=False)
    currency = db.Column(db.String(3), default="usd", nullable=False)
    status = db.Column(db.String(20), default="PENDING", nullable=False)
    stripe_session_id = db.Column(db.String(255), unique=True, nullable=True)
    stripe_payment_intent_id = db.Column(db.String(255), nullable=True)
    manual_reference = db.Column(db.String(255), nullable=True)
    approved_by_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=True
    )
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    failed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    failure_reason = db.Column(db.Text, nullable=True)
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    # --- Relationships ---
    prospect = db.relationship("Prospect", back_populates="payment")
    approved_by = db.relationship("User")

    def to_dict(self):
        return {
            "id": self.id,
            "method": self.method,
            "amount": str(self.amount),
            "currency": self.currency,
            "status": self.status,
            "manual_reference": self.manual_reference,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "failure_reason": self.failure_reason,
        }

    def __repr__(self):
        return f"<ProspectPayment {self.method} {self.amount} ({self.status})>"
