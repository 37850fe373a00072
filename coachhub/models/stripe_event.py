"""Stripe event model (idempotency table).

Every webhook event is recorded by its Stripe event ID. Before processing
an event the handler checks this table; a known event_id is acknowledged
with 200 and skipped, so Stripe retries never mark a payment twice.
"""

import uuid

from coachhub.extensions import db


class StripeEvent(db.Model):
    __tablename__ = "stripe_events"

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    stripe_event_id = db.Column(
        db.String(255), unique=True, nullable=False
    )  # e.g. "evt_1Abc..."
    event_type = db.Column(
        db.String(255), nullable=False
    )  # e.g. "checkout.session.completed"
    prospect_id = db.Column(db.String(36), nullable=True)
    processed_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    def __repr__(self):
        return f"<StripeEvent {self.stripe_event_id} ({self.event_type})>"
