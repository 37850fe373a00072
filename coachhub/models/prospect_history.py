"""Prospect status history (append-only).

One row per successful pipeline transition. ``sequence`` numbers the rows
of one prospect from 0; the unique constraint on (prospect_id, sequence)
makes a second writer racing on the same transition fail instead of
appending a duplicate row.
"""

import uuid

from coachhub.extensions import db


class ProspectStatusHistory(db.Model):
    __tablename__ = "prospect_status_history"
    __table_args__ = (
        db.UniqueConstraint(
            "prospect_id", "sequence", name="uq_prospect_history_sequence"
        ),
    )

    id = db.Column(
        db.String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    prospect_id = db.Column(
        db.String(36), db.ForeignKey("prospects.id"), nullable=False, index=True
    )
    sequence = db.Column(db.Integer, nullable=False)
    from_status = db.Column(db.String(50), nullable=True)  # NULL on the first row
    to_status = db.Column(db.String(50), nullable=False)
    notes = db.Column(db.Text, nullable=True)
    changed_by_id = db.Column(
        db.String(36), db.ForeignKey("users.id"), nullable=True
    )
    created_at = db.Column(
        db.DateTime(timezone=True), server_default=db.func.now()
    )

    # --- Relationships ---
    prospect = db.relationship("Prospect", back_populates="status_history")
    changed_by = db.relationship("User")

    def to_dict(self):
        return {
            "sequence": self.sequence,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "notes": self.notes,
            "changed_by_id": self.changed_by_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ProspectStatusHistory {self.from_status} -> {self.to_status}>"
