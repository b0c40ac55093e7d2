from datetime import datetime

from app.extensions import db
from app.models.enums import EscrowStatus, PayoutStatus


class Escrow(db.Model):
    __tablename__ = "escrows"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, unique=True, index=True)
    merchant_id = db.Column(db.Integer, db.ForeignKey("merchants.id"), nullable=False, index=True)

    amount_minor = db.Column(db.BigInteger, nullable=False, default=0)
    delivery_fee_minor = db.Column(db.BigInteger, nullable=False, default=0)
    status = db.Column(db.String(16), nullable=False, default=EscrowStatus.HELD.value, index=True)

    held_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    released_at = db.Column(db.DateTime, nullable=True)
    released_by = db.Column(db.String(32), nullable=True)

    order = db.relationship("Order")

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "merchant_id": int(self.merchant_id),
            "amount_minor": int(self.amount_minor or 0),
            "delivery_fee_minor": int(self.delivery_fee_minor or 0),
            "status": self.status or EscrowStatus.HELD.value,
            "held_at": self.held_at.isoformat() if self.held_at else None,
            "released_at": self.released_at.isoformat() if self.released_at else None,
            "released_by": self.released_by or "",
        }


class Payout(db.Model):
    __tablename__ = "payouts"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, unique=True, index=True)
    merchant_id = db.Column(db.Integer, db.ForeignKey("merchants.id"), nullable=False, index=True)
    amount_minor = db.Column(db.BigInteger, nullable=False, default=0)
    status = db.Column(db.String(16), nullable=False, default=PayoutStatus.PENDING.value, index=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    processed_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "merchant_id": int(self.merchant_id),
            "amount_minor": int(self.amount_minor or 0),
            "status": self.status or PayoutStatus.PENDING.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
        }
