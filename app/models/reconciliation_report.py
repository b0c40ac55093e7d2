from datetime import datetime
import json

from app.extensions import db


class ReconciliationReport(db.Model):
    __tablename__ = "reconciliation_reports"

    id = db.Column(db.Integer, primary_key=True)
    scope = db.Column(db.String(64), nullable=False, default="wallet_ledger")
    summary_json = db.Column(db.Text, nullable=True)
    wallet_count = db.Column(db.Integer, nullable=False, default=0)
    drift_count = db.Column(db.Integer, nullable=False, default=0)
    triggered_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_dict(self):
        try:
            summary = json.loads(self.summary_json or "{}")
        except Exception:
            summary = {}
        return {
            "id": int(self.id),
            "scope": self.scope or "",
            "wallet_count": int(self.wallet_count or 0),
            "drift_count": int(self.drift_count or 0),
            "triggered_by": self.triggered_by or "",
            "summary": summary if isinstance(summary, dict) else {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
