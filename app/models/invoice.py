from datetime import datetime

from app.extensions import db


class Invoice(db.Model):
    __tablename__ = "invoices"

    id = db.Column(db.Integer, primary_key=True)
    invoice_number = db.Column(db.String(32), nullable=False, unique=True, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, unique=True, index=True)
    amount_minor = db.Column(db.BigInteger, nullable=False, default=0)
    document_url = db.Column(db.String(512), nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    order = db.relationship("Order")

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "invoice_number": self.invoice_number or "",
            "order_id": int(self.order_id),
            "amount_minor": int(self.amount_minor or 0),
            "document_url": self.document_url or "",
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
