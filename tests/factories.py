from __future__ import annotations

import itertools
import json
import os
import unittest
from unittest.mock import patch

from app import create_app
from app.extensions import db
from app.integrations.messaging.mock_provider import MockMessagingProvider
from app.integrations.payments.mock_provider import MockPaymentsProvider
from app.integrations.payments.signature import compute_signature
from app.models import Delivery, Merchant, Order, Product, Rider, RiderApproval, RiderStatus
from app.services.delivery_orchestrator import update_status
from app.services.order_service import create_order
from app.services.payment_confirmation import confirm_payment
from app.utils.cache_layer import _reset_cache_state_for_tests
from app.utils.rate_limit import _reset_rate_limit_state_for_tests

WEBHOOK_SECRET = "test-webhook-secret"

# Both points sit on the mainland, so orders pay the same-zone fee.
MERCHANT_LAT, MERCHANT_LNG = 6.60, 3.35
CUSTOMER_LAT, CUSTOMER_LNG = 6.55, 3.36

# 2 x 4,250 retail + 1,500 delivery = 10,000 naira.
WHOLESALE_MINOR = 300000
RETAIL_MINOR = 425000
QUANTITY = 2
SAME_ZONE_FEE_MINOR = 150000
ORDER_TOTAL_MINOR = 1000000

TEST_ENV = {
    "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
    "DATABASE_URL": "sqlite:///:memory:",
    "SWIFTCART_ENV": "test",
    "PAYSTACK_WEBHOOK_SECRET": WEBHOOK_SECRET,
    "PAYMENTS_PROVIDER": "mock",
    "MESSAGING_PROVIDER": "mock",
    "INTEGRATIONS_MODE": "sandbox",
    "SIDE_EFFECTS_QUEUE": "false",
    "PAYSTACK_WEBHOOK_QUEUE": "false",
    "ORDER_RESERVE_STOCK": "false",
    "INVOICE_RETRY_BACKOFF_SECONDS": "0",
    "BROADCAST_DELAY_MS": "0",
    "ADMIN_ALERT_PHONES": "",
    "ADMIN_API_TOKEN": "",
    "REDIS_URL": "",
    "CACHE_REDIS_URL": "",
    "RATE_LIMIT_REDIS_URL": "",
    "MOCK_NOTIFY_FORCE_FAIL": "",
}

_seq = itertools.count(1)


def _phone(prefix: str) -> str:
    return f"{prefix}{next(_seq):07d}"


class PipelineTestCase(unittest.TestCase):
    """App on an in-memory database, rebuilt per test, with mock gateways."""

    @classmethod
    def setUpClass(cls):
        cls._env_patch = patch.dict(os.environ, TEST_ENV)
        cls._env_patch.start()
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        cls.client = cls.app.test_client()

    @classmethod
    def tearDownClass(cls):
        cls._env_patch.stop()

    def setUp(self):
        self._ctx = self.app.app_context()
        self._ctx.push()
        db.session.remove()
        db.drop_all()
        db.create_all()
        MockPaymentsProvider.reset()
        MockMessagingProvider.reset()
        _reset_cache_state_for_tests()
        _reset_rate_limit_state_for_tests()

    def tearDown(self):
        db.session.remove()
        self._ctx.pop()

    def reload(self, model, pk):
        """Fresh row after guarded UPDATEs that bypass the identity map."""
        db.session.expire_all()
        return db.session.get(model, int(pk))


def make_merchant(*, with_location: bool = True, **overrides) -> Merchant:
    merchant = Merchant(
        business_name=overrides.pop("business_name", "Mama Nkechi Provisions"),
        phone=overrides.pop("phone", _phone("0802")),
        pickup_address=overrides.pop("pickup_address", "12 Ikorodu Road, Yaba"),
        latitude=MERCHANT_LAT if with_location else None,
        longitude=MERCHANT_LNG if with_location else None,
        **overrides,
    )
    db.session.add(merchant)
    db.session.commit()
    return merchant


def make_product(merchant: Merchant, *, wholesale_minor: int = WHOLESALE_MINOR, retail_minor: int = RETAIL_MINOR, stock: int = 10, name: str = "Golden Penny Semovita 10kg") -> Product:
    product = Product(
        merchant_id=int(merchant.id),
        name=name,
        price_minor=wholesale_minor,
        retail_price_minor=retail_minor,
        stock_quantity=stock,
    )
    db.session.add(product)
    db.session.commit()
    return product


def make_rider(*, status: RiderStatus = RiderStatus.AVAILABLE, approved: bool = True, name: str = "Tunde") -> Rider:
    rider = Rider(
        name=name,
        phone=_phone("0703"),
        approval_status=(RiderApproval.APPROVED if approved else RiderApproval.PENDING).value,
        status=status.value,
    )
    db.session.add(rider)
    db.session.commit()
    return rider


def place_order(merchant: Merchant, product: Product, *, quantity: int = QUANTITY, customer_phone: str | None = None) -> Order:
    return create_order(
        customer_phone or _phone("0803"),
        int(merchant.id),
        [{"product_id": int(product.id), "quantity": quantity}],
        delivery_address="4 Adeniran Ogunsanya Street, Surulere",
        delivery_latitude=CUSTOMER_LAT,
        delivery_longitude=CUSTOMER_LNG,
    )


def pay(order: Order) -> dict:
    return confirm_payment(order.payment_reference, int(order.total_amount_minor))


def paid_order(*, rider: bool = True, delivered: bool = False) -> tuple[Order, Merchant, Product]:
    """A confirmed order; its delivery was created by the side effects."""
    merchant = make_merchant()
    product = make_product(merchant)
    if rider:
        make_rider()
    order = place_order(merchant, product)
    result = pay(order)
    assert result["outcome"] == "confirmed", result
    if delivered:
        deliver(order)
    return order, merchant, product


def deliver(order: Order) -> int:
    """Walk the order's assigned delivery to DELIVERED; returns the delivery id."""
    delivery_id = int(Delivery.query.filter_by(order_id=int(order.id)).one().id)
    update_status(delivery_id, "PICKED_UP")
    update_status(delivery_id, "DELIVERED")
    return delivery_id


def webhook_request(event: str, reference: str, amount_minor: int | None, *, secret: str = WEBHOOK_SECRET) -> tuple[bytes, dict]:
    data = {"reference": reference, "status": "success" if event == "charge.success" else "failed"}
    if amount_minor is not None:
        data["amount"] = int(amount_minor)
    raw = json.dumps({"event": event, "data": data}, separators=(",", ":")).encode("utf-8")
    headers = {"Content-Type": "application/json", "X-Paystack-Signature": compute_signature(raw, secret)}
    return raw, headers
