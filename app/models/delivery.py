from datetime import datetime

import sqlalchemy as sa

from app.extensions import db
from app.models.enums import DeliveryStatus, FeeTransactionStatus


class Delivery(db.Model):
    __tablename__ = "deliveries"

    id = db.Column(db.Integer, primary_key=True)
    delivery_number = db.Column(db.String(32), nullable=False, unique=True, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, unique=True, index=True)
    rider_id = db.Column(db.Integer, db.ForeignKey("riders.id"), nullable=True, index=True)

    status = db.Column(db.String(16), nullable=False, default=DeliveryStatus.PENDING.value, index=True)

    pickup_address = db.Column(db.String(255), nullable=True)
    pickup_latitude = db.Column(db.Float, nullable=True)
    pickup_longitude = db.Column(db.Float, nullable=True)
    delivery_address = db.Column(db.String(255), nullable=True)
    delivery_latitude = db.Column(db.Float, nullable=True)
    delivery_longitude = db.Column(db.Float, nullable=True)
    recipient_phone = db.Column(db.String(32), nullable=True)

    delivery_fee_minor = db.Column(db.BigInteger, nullable=False, default=0)

    assigned_at = db.Column(db.DateTime, nullable=True, index=True)
    picked_up_at = db.Column(db.DateTime, nullable=True)
    in_transit_at = db.Column(db.DateTime, nullable=True)
    delivered_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)

    customer_confirmed = db.Column(db.Boolean, nullable=False, default=False, server_default=sa.text("false"))
    customer_confirmed_at = db.Column(db.DateTime, nullable=True)
    auto_release_at = db.Column(db.DateTime, nullable=True, index=True)

    reassign_count = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    order = db.relationship("Order")
    rider = db.relationship("Rider")
    events = db.relationship("DeliveryEvent", back_populates="delivery", order_by="DeliveryEvent.id")

    @property
    def status_enum(self) -> DeliveryStatus:
        return DeliveryStatus.parse(self.status)

    def to_dict(self, *, include_events: bool = False) -> dict:
        payload = {
            "id": int(self.id),
            "delivery_number": self.delivery_number or "",
            "order_id": int(self.order_id),
            "rider_id": int(self.rider_id) if self.rider_id is not None else None,
            "status": self.status or DeliveryStatus.PENDING.value,
            "pickup_address": self.pickup_address or "",
            "pickup_latitude": self.pickup_latitude,
            "pickup_longitude": self.pickup_longitude,
            "delivery_address": self.delivery_address or "",
            "delivery_latitude": self.delivery_latitude,
            "delivery_longitude": self.delivery_longitude,
            "recipient_phone": self.recipient_phone or "",
            "delivery_fee_minor": int(self.delivery_fee_minor or 0),
            "assigned_at": self.assigned_at.isoformat() if self.assigned_at else None,
            "picked_up_at": self.picked_up_at.isoformat() if self.picked_up_at else None,
            "in_transit_at": self.in_transit_at.isoformat() if self.in_transit_at else None,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "customer_confirmed": bool(self.customer_confirmed),
            "customer_confirmed_at": self.customer_confirmed_at.isoformat() if self.customer_confirmed_at else None,
            "auto_release_at": self.auto_release_at.isoformat() if self.auto_release_at else None,
            "reassign_count": int(self.reassign_count or 0),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_events:
            payload["events"] = [e.to_dict() for e in self.events]
        return payload


class DeliveryEvent(db.Model):
    """Append-only audit row written on every delivery transition."""

    __tablename__ = "delivery_events"

    id = db.Column(db.Integer, primary_key=True)
    delivery_id = db.Column(db.Integer, db.ForeignKey("deliveries.id"), nullable=False, index=True)
    status = db.Column(db.String(16), nullable=False)
    description = db.Column(db.String(240), nullable=True)
    rider_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    delivery = db.relationship("Delivery", back_populates="events")

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "delivery_id": int(self.delivery_id),
            "status": self.status or "",
            "description": self.description or "",
            "rider_id": int(self.rider_id) if self.rider_id is not None else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class DeliveryFeeTransaction(db.Model):
    __tablename__ = "delivery_fee_transactions"

    id = db.Column(db.Integer, primary_key=True)
    delivery_id = db.Column(db.Integer, db.ForeignKey("deliveries.id"), nullable=False, unique=True, index=True)
    rider_id = db.Column(db.Integer, db.ForeignKey("riders.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    total_fee_minor = db.Column(db.BigInteger, nullable=False, default=0)
    rider_amount_minor = db.Column(db.BigInteger, nullable=False, default=0)
    platform_amount_minor = db.Column(db.BigInteger, nullable=False, default=0)
    status = db.Column(db.String(16), nullable=False, default=FeeTransactionStatus.COMPLETED.value)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "delivery_id": int(self.delivery_id),
            "rider_id": int(self.rider_id),
            "order_id": int(self.order_id),
            "total_fee_minor": int(self.total_fee_minor or 0),
            "rider_amount_minor": int(self.rider_amount_minor or 0),
            "platform_amount_minor": int(self.platform_amount_minor or 0),
            "status": self.status or FeeTransactionStatus.COMPLETED.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
