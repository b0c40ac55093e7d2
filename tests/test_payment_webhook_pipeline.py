from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from app.extensions import db
from app.integrations.messaging.mock_provider import MockMessagingProvider
from app.integrations.payments.mock_provider import MockPaymentsProvider
from app.models import (
    Delivery,
    DeliveryStatus,
    Escrow,
    EscrowStatus,
    Invoice,
    Order,
    OrderStatus,
    PaymentStatus,
    PlatformEvent,
    Product,
    Rider,
    RiderStatus,
    WebhookEvent,
)
from tests.factories import (
    ORDER_TOTAL_MINOR,
    PipelineTestCase,
    make_merchant,
    make_product,
    make_rider,
    place_order,
    webhook_request,
)


class PaymentWebhookPipelineTestCase(PipelineTestCase):
    def setUp(self):
        super().setUp()
        self.merchant = make_merchant()
        self.product = make_product(self.merchant, stock=10)
        self.product_id = int(self.product.id)
        order = place_order(self.merchant, self.product, customer_phone="08031112222")
        self.order_id = int(order.id)
        self.reference = order.payment_reference
        self.customer_phone = "08031112222"

    def _post(self, event: str, amount_minor: int | None, *, reference: str | None = None, secret: str | None = None):
        kwargs = {"secret": secret} if secret is not None else {}
        raw, headers = webhook_request(event, self.reference if reference is None else reference, amount_minor, **kwargs)
        return self.client.post("/api/webhooks/paystack", data=raw, headers=headers)

    def test_order_total_is_captured_at_creation(self):
        order = self.reload(Order, self.order_id)
        self.assertEqual(int(order.total_amount_minor), ORDER_TOTAL_MINOR)
        self.assertEqual(order.payment_status, PaymentStatus.PENDING.value)
        self.assertTrue(order.authorization_url.startswith("https://"))

    def test_successful_payment_confirms_order_and_dispatches_rider(self):
        rider_id = int(make_rider().id)

        res = self._post("charge.success", ORDER_TOTAL_MINOR)
        self.assertEqual(res.status_code, 200)
        body = res.get_json() or {}
        self.assertEqual(body.get("outcome"), "confirmed")

        order = self.reload(Order, self.order_id)
        self.assertEqual(order.payment_status, PaymentStatus.PAID.value)
        self.assertEqual(order.status, OrderStatus.PROCESSING.value)
        self.assertIsNotNone(order.paid_at)

        escrows = Escrow.query.filter_by(order_id=self.order_id).all()
        self.assertEqual(len(escrows), 1)
        self.assertEqual(escrows[0].status, EscrowStatus.HELD.value)
        self.assertEqual(int(escrows[0].amount_minor), ORDER_TOTAL_MINOR)

        self.assertEqual(int(db.session.get(Product, self.product_id).stock_quantity), 8)

        delivery = Delivery.query.filter_by(order_id=self.order_id).one()
        self.assertEqual(delivery.status, DeliveryStatus.ASSIGNED.value)
        self.assertEqual(int(delivery.rider_id), rider_id)
        self.assertEqual(db.session.get(Rider, rider_id).status, RiderStatus.BUSY.value)

        invoice = Invoice.query.filter_by(order_id=self.order_id).one()
        self.assertIsNotNone(invoice.delivered_at)
        kinds = [m["kind"] for m in MockMessagingProvider.sent_to(self.customer_phone)]
        self.assertIn("document", kinds)
        self.assertIn("text", kinds)

        audit = WebhookEvent.query.filter_by(reference=self.reference).one()
        self.assertEqual(audit.status, "processed")
        self.assertEqual(audit.outcome, "confirmed")

    def test_without_a_free_rider_the_delivery_waits_and_ops_is_alerted(self):
        res = self._post("charge.success", ORDER_TOTAL_MINOR)
        self.assertEqual(res.status_code, 200)

        delivery = Delivery.query.filter_by(order_id=self.order_id).one()
        self.assertEqual(delivery.status, DeliveryStatus.PENDING.value)
        self.assertIsNone(delivery.rider_id)
        event = PlatformEvent.query.filter_by(event_type="no_rider_available").one()
        self.assertEqual(event.severity, "HIGH")
        texts = [m["body"] for m in MockMessagingProvider.sent_to(self.customer_phone) if m["kind"] == "text"]
        self.assertTrue(any("finding a rider" in t for t in texts))

    def test_amount_mismatch_changes_nothing_and_is_flagged(self):
        res = self._post("charge.success", 950000)
        self.assertEqual(res.status_code, 200)
        self.assertEqual((res.get_json() or {}).get("outcome"), "amount_mismatch")

        order = self.reload(Order, self.order_id)
        self.assertEqual(order.payment_status, PaymentStatus.PENDING.value)
        self.assertEqual(order.status, OrderStatus.PENDING.value)
        self.assertEqual(Escrow.query.count(), 0)
        self.assertEqual(Delivery.query.count(), 0)
        self.assertEqual(int(db.session.get(Product, self.product_id).stock_quantity), 10)
        event = PlatformEvent.query.filter_by(event_type="payment_amount_mismatch").one()
        self.assertEqual(event.severity, "HIGH")
        self.assertEqual(event.metadata_dict().get("paid_minor"), 950000)

    def test_invalid_signature_is_rejected_before_any_processing(self):
        res = self._post("charge.success", ORDER_TOTAL_MINOR, secret="not-the-secret")
        self.assertEqual(res.status_code, 400)
        self.assertEqual((res.get_json() or {}).get("error"), "INVALID_SIGNATURE")
        self.assertEqual(self.reload(Order, self.order_id).payment_status, PaymentStatus.PENDING.value)
        self.assertEqual(WebhookEvent.query.count(), 0)

    def test_missing_signature_is_rejected(self):
        raw, headers = webhook_request("charge.success", self.reference, ORDER_TOTAL_MINOR)
        headers.pop("X-Paystack-Signature")
        res = self.client.post("/api/webhooks/paystack", data=raw, headers=headers)
        self.assertEqual(res.status_code, 400)

    def test_payload_without_reference_is_rejected(self):
        res = self._post("charge.success", ORDER_TOTAL_MINOR, reference="")
        self.assertEqual(res.status_code, 400)
        self.assertEqual((res.get_json() or {}).get("error"), "INVALID_PAYLOAD")
        self.assertEqual(self.reload(Order, self.order_id).payment_status, PaymentStatus.PENDING.value)
        self.assertEqual(Escrow.query.count(), 0)

    def test_replayed_event_is_acknowledged_without_side_effects(self):
        make_rider()
        first = self._post("charge.success", ORDER_TOTAL_MINOR)
        self.assertEqual((first.get_json() or {}).get("outcome"), "confirmed")
        sent_after_first = len(MockMessagingProvider.outbox)

        second = self._post("charge.success", ORDER_TOTAL_MINOR)
        self.assertEqual(second.status_code, 200)
        self.assertTrue((second.get_json() or {}).get("replayed"))

        self.assertEqual(Escrow.query.filter_by(order_id=self.order_id).count(), 1)
        self.assertEqual(Delivery.query.filter_by(order_id=self.order_id).count(), 1)
        self.assertEqual(int(db.session.get(Product, self.product_id).stock_quantity), 8)
        self.assertEqual(len(MockMessagingProvider.outbox), sent_after_first)

    def test_stock_sold_out_before_payment_cancels_and_refunds(self):
        product = db.session.get(Product, self.product_id)
        product.stock_quantity = 1
        db.session.commit()

        res = self._post("charge.success", ORDER_TOTAL_MINOR)
        self.assertEqual((res.get_json() or {}).get("outcome"), "out_of_stock")

        order = self.reload(Order, self.order_id)
        self.assertEqual(order.status, OrderStatus.CANCELLED.value)
        self.assertEqual(order.payment_status, PaymentStatus.FAILED.value)
        self.assertEqual(order.cancel_reason, "out_of_stock")
        self.assertEqual(Escrow.query.count(), 0)
        self.assertEqual(int(db.session.get(Product, self.product_id).stock_quantity), 1)
        self.assertEqual(MockPaymentsProvider.refunds, [{"reference": self.reference, "amount_minor": ORDER_TOTAL_MINOR}])
        texts = [m["body"] for m in MockMessagingProvider.sent_to(self.customer_phone)]
        self.assertTrue(any("sold out" in t for t in texts))

    def test_refund_failure_is_logged_critical(self):
        product = db.session.get(Product, self.product_id)
        product.stock_quantity = 0
        db.session.commit()
        MockPaymentsProvider.fail_refunds = True

        res = self._post("charge.success", ORDER_TOTAL_MINOR)
        self.assertEqual((res.get_json() or {}).get("outcome"), "out_of_stock")
        event = PlatformEvent.query.filter_by(event_type="refund_failed").one()
        self.assertEqual(event.severity, "CRITICAL")
        self.assertEqual(self.reload(Order, self.order_id).status, OrderStatus.CANCELLED.value)

    def test_charge_failed_marks_payment_failed(self):
        res = self._post("charge.failed", None)
        self.assertEqual(res.status_code, 200)
        self.assertEqual((res.get_json() or {}).get("outcome"), "failed")
        self.assertEqual(self.reload(Order, self.order_id).payment_status, PaymentStatus.FAILED.value)

    def test_payment_after_expiry_is_refunded_not_accepted(self):
        order = db.session.get(Order, self.order_id)
        order.payment_status = PaymentStatus.FAILED.value
        order.status = OrderStatus.CANCELLED.value
        order.cancel_reason = "payment_expired"
        db.session.commit()

        res = self._post("charge.success", ORDER_TOTAL_MINOR)
        self.assertEqual((res.get_json() or {}).get("outcome"), "late_payment_refunded")

        order = self.reload(Order, self.order_id)
        self.assertEqual(order.status, OrderStatus.CANCELLED.value)
        self.assertEqual(Escrow.query.count(), 0)
        self.assertEqual(len(MockPaymentsProvider.refunds), 1)
        event = PlatformEvent.query.filter_by(event_type="payment_after_cancellation").one()
        self.assertEqual(event.severity, "HIGH")

    def test_unknown_reference_is_acknowledged(self):
        res = self._post("charge.success", ORDER_TOTAL_MINOR, reference="SC-DOESNOTEXIST")
        self.assertEqual(res.status_code, 200)
        self.assertEqual((res.get_json() or {}).get("outcome"), "unknown_reference")

    def test_unhandled_event_type_is_ignored(self):
        res = self._post("transfer.success", 1000)
        self.assertEqual(res.status_code, 200)
        self.assertTrue((res.get_json() or {}).get("ignored"))

    def test_failing_side_effect_does_not_unwind_the_payment(self):
        with patch("app.services.delivery_orchestrator.create_delivery", side_effect=RuntimeError("dispatch down")):
            res = self._post("charge.success", ORDER_TOTAL_MINOR)
        self.assertEqual((res.get_json() or {}).get("outcome"), "confirmed")

        order = self.reload(Order, self.order_id)
        self.assertEqual(order.payment_status, PaymentStatus.PAID.value)
        self.assertEqual(Escrow.query.filter_by(order_id=self.order_id).one().status, EscrowStatus.HELD.value)
        self.assertEqual(Delivery.query.count(), 0)
        event = PlatformEvent.query.filter_by(event_type="post_payment_step_failed").one()
        self.assertEqual(event.severity, "HIGH")
        self.assertEqual(event.metadata_dict().get("step"), "delivery_creation")
        # The invoice step still ran.
        self.assertEqual(Invoice.query.filter_by(order_id=self.order_id).count(), 1)

    def test_processing_error_releases_the_claim_for_redelivery(self):
        with patch("app.services.payment_confirmation.confirm_payment", side_effect=RuntimeError("db blip")):
            failed = self._post("charge.success", ORDER_TOTAL_MINOR)
        self.assertEqual(failed.status_code, 500)
        self.assertEqual(self.reload(Order, self.order_id).payment_status, PaymentStatus.PENDING.value)

        retried = self._post("charge.success", ORDER_TOTAL_MINOR)
        self.assertEqual(retried.status_code, 200)
        self.assertEqual((retried.get_json() or {}).get("outcome"), "confirmed")

    def test_dedup_store_outage_returns_retryable_error(self):
        with patch("app.services.payment_confirmation.claim_webhook_event", side_effect=ConnectionError("redis down")):
            res = self._post("charge.success", ORDER_TOTAL_MINOR)
        self.assertEqual(res.status_code, 500)
        self.assertEqual((res.get_json() or {}).get("error"), "DEDUP_UNAVAILABLE")
        self.assertEqual(self.reload(Order, self.order_id).payment_status, PaymentStatus.PENDING.value)

    def test_queue_mode_verifies_then_enqueues(self):
        with patch.dict(os.environ, {"PAYSTACK_WEBHOOK_QUEUE": "true"}), patch(
            "app.tasks.fulfillment_tasks.process_paystack_event_task"
        ) as task:
            bad = self._post("charge.success", ORDER_TOTAL_MINOR, secret="wrong")
            good = self._post("charge.success", ORDER_TOTAL_MINOR)

        self.assertEqual(bad.status_code, 400)
        self.assertEqual(good.status_code, 200)
        self.assertTrue((good.get_json() or {}).get("queued"))
        self.assertEqual(task.delay.call_count, 1)
        payload = task.delay.call_args.kwargs["payload"]
        self.assertEqual(payload["data"]["reference"], self.reference)
        self.assertEqual(self.reload(Order, self.order_id).payment_status, PaymentStatus.PENDING.value)


if __name__ == "__main__":
    unittest.main()
