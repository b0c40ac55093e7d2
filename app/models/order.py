from datetime import datetime

import sqlalchemy as sa

from app.extensions import db
from app.models.enums import OrderStatus, PaymentStatus


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(32), nullable=False, unique=True, index=True)

    customer_phone = db.Column(db.String(32), nullable=False, index=True)
    customer_email = db.Column(db.String(160), nullable=True)
    merchant_id = db.Column(db.Integer, db.ForeignKey("merchants.id"), nullable=False, index=True)

    # Totals are captured once at creation and never recomputed.
    subtotal_minor = db.Column(db.BigInteger, nullable=False, default=0)
    delivery_fee_minor = db.Column(db.BigInteger, nullable=False, default=0)
    total_amount_minor = db.Column(db.BigInteger, nullable=False, default=0)
    currency = db.Column(db.String(8), nullable=False, default="NGN", server_default="NGN")

    payment_reference = db.Column(db.String(64), nullable=False, unique=True, index=True)
    payment_status = db.Column(
        db.String(16), nullable=False, default=PaymentStatus.PENDING.value, index=True
    )
    status = db.Column(db.String(16), nullable=False, default=OrderStatus.PENDING.value, index=True)
    payment_expires_at = db.Column(db.DateTime, nullable=True, index=True)
    authorization_url = db.Column(db.String(512), nullable=True)
    paid_at = db.Column(db.DateTime, nullable=True)

    delivery_address = db.Column(db.String(255), nullable=True)
    delivery_latitude = db.Column(db.Float, nullable=True)
    delivery_longitude = db.Column(db.Float, nullable=True)

    stock_reserved = db.Column(db.Boolean, nullable=False, default=False, server_default=sa.text("false"))
    delivery_confirmed = db.Column(db.Boolean, nullable=False, default=False, server_default=sa.text("false"))
    delivery_confirmed_at = db.Column(db.DateTime, nullable=True)

    cancel_reason = db.Column(db.String(240), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    items = db.relationship(
        "OrderItem",
        back_populates="order",
        order_by="OrderItem.id",
        cascade="all, delete-orphan",
    )
    merchant = db.relationship("Merchant")

    @property
    def is_paid(self) -> bool:
        return (self.payment_status or "") == PaymentStatus.PAID.value

    def to_dict(self, *, include_items: bool = True) -> dict:
        payload = {
            "id": int(self.id),
            "order_number": self.order_number or "",
            "customer_phone": self.customer_phone or "",
            "customer_email": self.customer_email or "",
            "merchant_id": int(self.merchant_id),
            "subtotal_minor": int(self.subtotal_minor or 0),
            "delivery_fee_minor": int(self.delivery_fee_minor or 0),
            "total_amount_minor": int(self.total_amount_minor or 0),
            "currency": self.currency or "NGN",
            "payment_reference": self.payment_reference or "",
            "payment_status": self.payment_status or PaymentStatus.PENDING.value,
            "status": self.status or OrderStatus.PENDING.value,
            "payment_expires_at": self.payment_expires_at.isoformat() if self.payment_expires_at else None,
            "authorization_url": self.authorization_url or "",
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "delivery_address": self.delivery_address or "",
            "delivery_confirmed": bool(self.delivery_confirmed),
            "delivery_confirmed_at": self.delivery_confirmed_at.isoformat() if self.delivery_confirmed_at else None,
            "stock_reserved": bool(self.stock_reserved),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_items:
            payload["items"] = [item.to_dict() for item in self.items]
        return payload


class OrderItem(db.Model):
    __tablename__ = "order_items"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    product_name = db.Column(db.String(160), nullable=True)

    quantity = db.Column(db.Integer, nullable=False, default=1)
    # Prices captured when the cart was confirmed.
    unit_price_minor = db.Column(db.BigInteger, nullable=False, default=0)
    wholesale_price_minor = db.Column(db.BigInteger, nullable=True)
    line_total_minor = db.Column(db.BigInteger, nullable=False, default=0)

    stock_reserved = db.Column(db.Boolean, nullable=False, default=False, server_default=sa.text("false"))

    order = db.relationship("Order", back_populates="items")
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "product_id": int(self.product_id),
            "product_name": self.product_name or "",
            "quantity": int(self.quantity or 0),
            "unit_price_minor": int(self.unit_price_minor or 0),
            "wholesale_price_minor": int(self.wholesale_price_minor) if self.wholesale_price_minor is not None else None,
            "line_total_minor": int(self.line_total_minor or 0),
            "stock_reserved": bool(self.stock_reserved),
        }
