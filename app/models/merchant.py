from datetime import datetime

import sqlalchemy as sa

from app.extensions import db


class Merchant(db.Model):
    __tablename__ = "merchants"

    id = db.Column(db.Integer, primary_key=True)
    business_name = db.Column(db.String(160), nullable=False)
    phone = db.Column(db.String(32), nullable=False, unique=True, index=True)
    email = db.Column(db.String(160), nullable=True)

    # Pickup location used when dispatching riders.
    pickup_address = db.Column(db.String(255), nullable=True)
    latitude = db.Column(db.Float, nullable=True)
    longitude = db.Column(db.Float, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True, server_default=sa.text("true"))
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    products = db.relationship("Product", back_populates="merchant", lazy="dynamic")

    @property
    def has_pickup_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "business_name": self.business_name or "",
            "phone": self.phone or "",
            "email": self.email or "",
            "pickup_address": self.pickup_address or "",
            "latitude": self.latitude,
            "longitude": self.longitude,
            "is_active": bool(self.is_active),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class Product(db.Model):
    __tablename__ = "products"

    id = db.Column(db.Integer, primary_key=True)
    merchant_id = db.Column(db.Integer, db.ForeignKey("merchants.id"), nullable=False, index=True)
    name = db.Column(db.String(160), nullable=False)

    # Wholesale price is what the merchant is paid; retail includes platform markup.
    price_minor = db.Column(db.BigInteger, nullable=False, default=0)
    retail_price_minor = db.Column(db.BigInteger, nullable=False, default=0)

    stock_quantity = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True, server_default=sa.text("true"))

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    merchant = db.relationship("Merchant", back_populates="products")

    @property
    def effective_retail_minor(self) -> int:
        retail = int(self.retail_price_minor or 0)
        return retail if retail > 0 else int(self.price_minor or 0)

    def to_dict(self) -> dict:
        return {
            "id": int(self.id),
            "merchant_id": int(self.merchant_id),
            "name": self.name or "",
            "price_minor": int(self.price_minor or 0),
            "retail_price_minor": self.effective_retail_minor,
            "stock_quantity": int(self.stock_quantity or 0),
            "is_active": bool(self.is_active),
        }
