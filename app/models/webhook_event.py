from datetime import datetime

from app.extensions import db


class WebhookEvent(db.Model):
    """Audit copy of every authenticated gateway event that passed the dedup gate."""

    __tablename__ = "webhook_events"
    __table_args__ = (
        db.UniqueConstraint("provider", "event_type", "reference", name="uq_webhook_event_dedup"),
    )

    id = db.Column(db.Integer, primary_key=True)
    provider = db.Column(db.String(32), nullable=False, default="paystack")
    event_type = db.Column(db.String(64), nullable=False)
    reference = db.Column(db.String(128), nullable=False, index=True)
    amount_minor = db.Column(db.BigInteger, nullable=True)
    status = db.Column(db.String(32), nullable=False, default="received")  # received | processed | ignored | failed
    outcome = db.Column(db.String(64), nullable=True)
    processed_at = db.Column(db.DateTime, nullable=True)
    request_id = db.Column(db.String(64), nullable=True)
    payload_hash = db.Column(db.String(128), nullable=True)
    error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "provider": self.provider,
            "event_type": self.event_type or "",
            "reference": self.reference or "",
            "amount_minor": int(self.amount_minor) if self.amount_minor is not None else None,
            "status": self.status or "",
            "outcome": self.outcome or "",
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "request_id": self.request_id or "",
            "payload_hash": self.payload_hash or "",
            "error": self.error or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
