from __future__ import annotations

import uuid
from datetime import datetime, timedelta

from flask import current_app

from app.extensions import db
from app.integrations.payments.factory import build_payments_provider
from app.models import Merchant, Order, OrderItem, OrderStatus, PaymentStatus, Product, Severity
from app.services.stock_service import reserve_stock
from app.utils.delivery_fee import compute_delivery_fee_minor
from app.utils.env import env_bool, env_int
from app.utils.errors import InsufficientStock, NotFoundError, ValidationError
from app.utils.events import log_event
from app.utils.sequences import ORDER_PREFIX, next_number


def payment_window_minutes() -> int:
    return env_int("PAYMENT_WINDOW_MINUTES", 30, minimum=1, maximum=24 * 60)


def reserve_stock_enabled() -> bool:
    return env_bool("ORDER_RESERVE_STOCK", False)


def new_payment_reference() -> str:
    return f"SC-{uuid.uuid4().hex[:20].upper()}"


def _normalize_items(items) -> list[tuple[int, int]]:
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list")
    merged: dict[int, int] = {}
    for raw in items:
        if not isinstance(raw, dict):
            raise ValidationError("each item must be an object")
        try:
            pid = int(raw.get("product_id"))
            qty = int(raw.get("quantity") or 1)
        except (TypeError, ValueError):
            raise ValidationError("product_id and quantity must be integers") from None
        if qty <= 0:
            raise ValidationError("quantity must be positive")
        merged[pid] = merged.get(pid, 0) + qty
    return list(merged.items())


def create_order(
    customer_phone: str,
    merchant_id: int,
    items: list[dict],
    *,
    customer_email: str | None = None,
    delivery_address: str | None = None,
    delivery_latitude: float | None = None,
    delivery_longitude: float | None = None,
) -> Order:
    """Capture a confirmed cart as a PENDING order and open a payment.

    Prices are snapshotted per line and the total is fixed here; nothing
    downstream recomputes it.
    """
    phone = (customer_phone or "").strip()
    if not phone:
        raise ValidationError("customer_phone is required")
    merchant = db.session.get(Merchant, int(merchant_id))
    if merchant is None or not merchant.is_active:
        raise NotFoundError(f"merchant {merchant_id} not found")

    lines = _normalize_items(items)
    order_items: list[OrderItem] = []
    subtotal = 0
    for pid, qty in lines:
        product = db.session.get(Product, pid)
        if product is None or not product.is_active or int(product.merchant_id) != int(merchant.id):
            raise NotFoundError(f"product {pid} not found for merchant {merchant.id}")
        if int(product.stock_quantity or 0) < qty:
            raise InsufficientStock(
                f"only {int(product.stock_quantity or 0)} of {product.name} left",
                details={"product_id": pid, "required": qty, "available": int(product.stock_quantity or 0)},
            )
        unit = product.effective_retail_minor
        line_total = unit * qty
        subtotal += line_total
        order_items.append(
            OrderItem(
                product_id=pid,
                product_name=product.name,
                quantity=qty,
                unit_price_minor=unit,
                wholesale_price_minor=int(product.price_minor or 0),
                line_total_minor=line_total,
            )
        )

    fee = compute_delivery_fee_minor(
        pickup_latitude=merchant.latitude,
        pickup_longitude=merchant.longitude,
        dropoff_latitude=delivery_latitude,
        dropoff_longitude=delivery_longitude,
    )
    now = datetime.utcnow()
    try:
        order = Order(
            order_number=next_number(ORDER_PREFIX),
            customer_phone=phone[:32],
            customer_email=(customer_email or "").strip()[:160] or None,
            merchant_id=int(merchant.id),
            subtotal_minor=subtotal,
            delivery_fee_minor=fee,
            total_amount_minor=subtotal + fee,
            payment_reference=new_payment_reference(),
            payment_status=PaymentStatus.PENDING.value,
            status=OrderStatus.PENDING.value,
            payment_expires_at=now + timedelta(minutes=payment_window_minutes()),
            delivery_address=(delivery_address or "").strip()[:255] or None,
            delivery_latitude=delivery_latitude,
            delivery_longitude=delivery_longitude,
        )
        order.items = order_items
        db.session.add(order)
        db.session.flush()
        if reserve_stock_enabled() and not reserve_stock(order):
            raise InsufficientStock("stock changed while placing the order")
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    _initialize_charge(order)
    return order


def _initialize_charge(order: Order) -> None:
    email = order.customer_email or f"{''.join(ch for ch in order.customer_phone if ch.isdigit()) or 'customer'}@customers.swiftcart.ng"
    try:
        result = build_payments_provider().initialize(
            email=email,
            amount_minor=int(order.total_amount_minor or 0),
            reference=order.payment_reference,
            metadata={"order_id": int(order.id), "order_number": order.order_number},
        )
        order.authorization_url = (result.authorization_url or "")[:512] or None
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        current_app.logger.warning("payment_initialize_failed order_id=%s error=%s", order.id, e)
        log_event(
            "payment_initialize_failed",
            severity=Severity.MEDIUM,
            message=f"could not open payment for {order.order_number}: {type(e).__name__}",
            subject_type="order",
            subject_id=order.id,
            metadata={"error": str(e)[:400]},
        )


def get_order_by_reference(reference: str) -> Order:
    order = Order.query.filter_by(payment_reference=(reference or "").strip()).first()
    if order is None:
        raise NotFoundError(f"order with reference {reference} not found")
    return order
