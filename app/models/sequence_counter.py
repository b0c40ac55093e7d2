from datetime import datetime

from app.extensions import db


class SequenceCounter(db.Model):
    __tablename__ = "sequence_counters"
    __table_args__ = (
        db.UniqueConstraint("prefix", "period", name="uq_sequence_prefix_period"),
    )

    id = db.Column(db.Integer, primary_key=True)
    prefix = db.Column(db.String(16), nullable=False)
    period = db.Column(db.String(16), nullable=False)  # YYYYMMDD or YYYY
    value = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
