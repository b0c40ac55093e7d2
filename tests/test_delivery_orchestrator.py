from __future__ import annotations

import os
import unittest
from datetime import timedelta
from unittest.mock import patch

from app.integrations.messaging.mock_provider import MockMessagingProvider
from app.models import (
    Delivery,
    DeliveryEvent,
    DeliveryStatus,
    Escrow,
    EscrowStatus,
    Order,
    OrderStatus,
    PlatformEvent,
    Rider,
    RiderStatus,
)
from app.services.delivery_orchestrator import (
    assign_rider,
    cancel_delivery,
    confirm_delivery,
    create_delivery,
    reassign_delivery,
    set_rider_status,
    update_status,
)
from app.utils.errors import (
    DeliveryAlreadyExists,
    InvalidTransition,
    MerchantLocationMissing,
    OrderNotPaid,
    RiderUnavailable,
    ValidationError,
)
from tests.factories import (
    PipelineTestCase,
    make_merchant,
    make_product,
    make_rider,
    paid_order,
    pay,
    place_order,
)


class DeliveryOrchestratorTestCase(PipelineTestCase):
    def _assigned(self):
        order, _, _ = paid_order()
        delivery = Delivery.query.filter_by(order_id=int(order.id)).one()
        return int(order.id), int(delivery.id), int(delivery.rider_id), order.customer_phone

    def _delivered(self):
        order_id, delivery_id, rider_id, phone = self._assigned()
        update_status(delivery_id, "PICKED_UP")
        update_status(delivery_id, "IN_TRANSIT")
        update_status(delivery_id, "DELIVERED")
        return order_id, delivery_id, rider_id, phone

    def test_delivery_number_and_snapshot_are_captured(self):
        order_id, delivery_id, _, phone = self._assigned()
        delivery = self.reload(Delivery, delivery_id)
        self.assertRegex(delivery.delivery_number, r"^DEL-\d{8}-\d{4}$")
        self.assertEqual(int(delivery.delivery_fee_minor), 150000)
        self.assertEqual(delivery.recipient_phone, phone)
        self.assertEqual(delivery.pickup_address, "12 Ikorodu Road, Yaba")
        self.assertEqual(DeliveryEvent.query.filter_by(delivery_id=delivery_id).count(), 1)

    def test_create_delivery_guards(self):
        merchant = make_merchant()
        product = make_product(merchant)
        unpaid = place_order(merchant, product)
        with self.assertRaises(OrderNotPaid):
            create_delivery(int(unpaid.id))

        order_id, _, _, _ = self._assigned()
        with self.assertRaises(DeliveryAlreadyExists):
            create_delivery(order_id)

    def test_merchant_without_location_cannot_ship(self):
        merchant = make_merchant(with_location=False)
        product = make_product(merchant)
        order = place_order(merchant, product)
        self.assertEqual(pay(order)["outcome"], "confirmed")
        with self.assertRaises(MerchantLocationMissing):
            create_delivery(int(order.id))
        event = PlatformEvent.query.filter_by(event_type="post_payment_step_failed").one()
        self.assertEqual(event.metadata_dict().get("step"), "delivery_creation")

    def test_full_lifecycle_mirrors_order_status(self):
        order_id, delivery_id, rider_id, phone = self._assigned()

        update_status(delivery_id, "PICKED_UP")
        self.assertEqual(self.reload(Order, order_id).status, OrderStatus.SHIPPED.value)
        update_status(delivery_id, "IN_TRANSIT")
        delivery = update_status(delivery_id, "DELIVERED")

        self.assertEqual(delivery.status, DeliveryStatus.DELIVERED.value)
        self.assertIsNotNone(delivery.picked_up_at)
        self.assertIsNotNone(delivery.in_transit_at)
        self.assertIsNotNone(delivery.delivered_at)
        self.assertAlmostEqual(
            (delivery.auto_release_at - delivery.delivered_at).total_seconds(),
            timedelta(hours=48).total_seconds(),
            delta=1,
        )
        self.assertEqual(self.reload(Order, order_id).status, OrderStatus.DELIVERED.value)

        rider = self.reload(Rider, rider_id)
        self.assertEqual(rider.status, RiderStatus.AVAILABLE.value)
        self.assertEqual(int(rider.total_deliveries), 1)

        prompts = [m for m in MockMessagingProvider.sent_to(phone) if m["kind"] == "interactive"]
        self.assertEqual(len(prompts), 1)
        self.assertEqual(
            [b["id"] for b in prompts[0]["buttons"]],
            [f"confirm_delivery:{delivery_id}", f"report_issue:{delivery_id}"],
        )
        self.assertEqual(self.reload(Escrow, Escrow.query.filter_by(order_id=order_id).one().id).status, EscrowStatus.HELD.value)

    def test_picked_up_may_skip_in_transit(self):
        _, delivery_id, _, _ = self._assigned()
        update_status(delivery_id, DeliveryStatus.PICKED_UP)
        delivery = update_status(delivery_id, DeliveryStatus.DELIVERED)
        self.assertEqual(delivery.status, DeliveryStatus.DELIVERED.value)
        self.assertIsNone(delivery.in_transit_at)

    def test_invalid_transitions_are_rejected(self):
        _, delivery_id, _, _ = self._assigned()
        with self.assertRaises(InvalidTransition):
            update_status(delivery_id, "DELIVERED")
        with self.assertRaises(InvalidTransition):
            update_status(delivery_id, "ASSIGNED")
        with self.assertRaises(ValidationError):
            update_status(delivery_id, "TELEPORTED")
        self.assertEqual(self.reload(Delivery, delivery_id).status, DeliveryStatus.ASSIGNED.value)

    def test_terminal_states_accept_nothing(self):
        _, delivery_id, _, _ = self._delivered()
        with self.assertRaises(InvalidTransition):
            update_status(delivery_id, "IN_TRANSIT")
        with self.assertRaises(InvalidTransition):
            cancel_delivery(delivery_id)

    def test_confirmation_releases_escrow_once(self):
        order_id, delivery_id, _, _ = self._delivered()

        first = confirm_delivery(delivery_id)
        self.assertTrue(first["newly_confirmed"])
        self.assertEqual(first["settlement"]["merchant_earnings_minor"], 600000)
        self.assertTrue(self.reload(Order, order_id).delivery_confirmed)
        self.assertEqual(
            self.reload(Escrow, Escrow.query.filter_by(order_id=order_id).one().id).status,
            EscrowStatus.RELEASED.value,
        )

        second = confirm_delivery(delivery_id)
        self.assertFalse(second["newly_confirmed"])
        self.assertIsNone(second["settlement"])

    def test_confirmation_before_delivery_is_rejected(self):
        _, delivery_id, _, _ = self._assigned()
        with self.assertRaises(InvalidTransition):
            confirm_delivery(delivery_id)

    def test_pending_delivery_gets_a_rider_later(self):
        order, _, _ = paid_order(rider=False)
        delivery_id = int(Delivery.query.filter_by(order_id=int(order.id)).one().id)
        with self.assertRaises(RiderUnavailable):
            assign_rider(delivery_id)

        rider_id = int(make_rider().id)
        delivery = assign_rider(delivery_id)
        self.assertEqual(delivery.status, DeliveryStatus.ASSIGNED.value)
        self.assertEqual(int(delivery.rider_id), rider_id)
        self.assertIsNotNone(delivery.assigned_at)
        self.assertEqual(self.reload(Rider, rider_id).status, RiderStatus.BUSY.value)

    def test_assigning_a_busy_rider_is_rejected(self):
        order, _, _ = paid_order(rider=False)
        delivery_id = int(Delivery.query.filter_by(order_id=int(order.id)).one().id)
        busy_id = int(make_rider(status=RiderStatus.BUSY).id)
        with self.assertRaises(RiderUnavailable):
            assign_rider(delivery_id, busy_id)
        unapproved_id = int(make_rider(approved=False).id)
        with self.assertRaises(RiderUnavailable):
            assign_rider(delivery_id, unapproved_id)
        self.assertEqual(self.reload(Delivery, delivery_id).status, DeliveryStatus.PENDING.value)

    def test_reassignment_swaps_riders(self):
        _, delivery_id, old_rider_id, _ = self._assigned()
        new_rider_id = int(make_rider(name="Bola").id)

        delivery = reassign_delivery(delivery_id, "rider not responding")
        self.assertIsNotNone(delivery)
        self.assertEqual(int(delivery.rider_id), new_rider_id)
        self.assertEqual(int(delivery.reassign_count), 1)
        self.assertEqual(self.reload(Rider, old_rider_id).status, RiderStatus.AVAILABLE.value)
        self.assertEqual(self.reload(Rider, new_rider_id).status, RiderStatus.BUSY.value)

    def test_reassignment_without_free_rider_keeps_current_rider(self):
        _, delivery_id, rider_id, _ = self._assigned()

        self.assertIsNone(reassign_delivery(delivery_id))

        delivery = self.reload(Delivery, delivery_id)
        self.assertEqual(delivery.status, DeliveryStatus.ASSIGNED.value)
        self.assertEqual(int(delivery.rider_id), rider_id)
        self.assertEqual(self.reload(Rider, rider_id).status, RiderStatus.BUSY.value)
        self.assertEqual(PlatformEvent.query.filter_by(event_type="reassign_no_rider").count(), 1)

    def test_cancellation_frees_rider_and_keeps_escrow_held(self):
        order_id, delivery_id, rider_id, _ = self._assigned()

        delivery = cancel_delivery(delivery_id, "customer unreachable")
        self.assertEqual(delivery.status, DeliveryStatus.CANCELLED.value)
        self.assertEqual(self.reload(Rider, rider_id).status, RiderStatus.AVAILABLE.value)
        order = self.reload(Order, order_id)
        self.assertEqual(order.status, OrderStatus.CANCELLED.value)
        self.assertEqual(order.cancel_reason, "customer unreachable")
        self.assertEqual(
            self.reload(Escrow, Escrow.query.filter_by(order_id=order_id).one().id).status,
            EscrowStatus.HELD.value,
        )
        event = PlatformEvent.query.filter_by(event_type="delivery_cancelled").one()
        self.assertEqual(event.severity, "HIGH")

    def test_rider_status_rules(self):
        rider_id = int(make_rider(status=RiderStatus.OFFLINE).id)
        rider = set_rider_status(rider_id, "available", latitude=6.5, longitude=3.4)
        self.assertEqual(rider.status, RiderStatus.AVAILABLE.value)
        self.assertEqual(rider.current_latitude, 6.5)
        self.assertIsNotNone(rider.last_location_at)

        with self.assertRaises(ValidationError):
            set_rider_status(rider_id, "BUSY")
        with self.assertRaises(ValidationError):
            set_rider_status(rider_id, "napping")

        pending_id = int(make_rider(status=RiderStatus.OFFLINE, approved=False).id)
        with self.assertRaises(RiderUnavailable):
            set_rider_status(pending_id, "AVAILABLE")

        busy_id = int(make_rider(status=RiderStatus.BUSY).id)
        with self.assertRaises(InvalidTransition):
            set_rider_status(busy_id, "OFFLINE")


class DeliveryRoutesTestCase(PipelineTestCase):
    def test_status_route_and_customer_confirm(self):
        order, _, _ = paid_order()
        order_id = int(order.id)
        delivery_id = int(Delivery.query.filter_by(order_id=order_id).one().id)

        for status in ("PICKED_UP", "IN_TRANSIT", "DELIVERED"):
            res = self.client.post(f"/api/deliveries/{delivery_id}/status", json={"status": status})
            self.assertEqual(res.status_code, 200, res.get_json())

        bad = self.client.post(f"/api/deliveries/{delivery_id}/status", json={"status": "PICKED_UP"})
        self.assertEqual(bad.status_code, 409)
        self.assertEqual((bad.get_json() or {}).get("error"), "INVALID_TRANSITION")

        res = self.client.post(f"/api/deliveries/{delivery_id}/confirm")
        self.assertEqual(res.status_code, 200)
        self.assertTrue((res.get_json() or {}).get("newly_confirmed"))

        detail = self.client.get(f"/api/deliveries/{delivery_id}")
        self.assertEqual(detail.status_code, 200)
        events = ((detail.get_json() or {}).get("delivery") or {}).get("events") or []
        self.assertGreaterEqual(len(events), 4)

    def test_admin_reassign_without_rider_is_conflict(self):
        order, _, _ = paid_order()
        delivery_id = int(Delivery.query.filter_by(order_id=int(order.id)).one().id)
        res = self.client.post(f"/api/deliveries/{delivery_id}/reassign")
        self.assertEqual(res.status_code, 409)
        self.assertEqual((res.get_json() or {}).get("error"), "NO_RIDER_AVAILABLE")

    def test_admin_routes_require_token_when_configured(self):
        order, _, _ = paid_order()
        delivery_id = int(Delivery.query.filter_by(order_id=int(order.id)).one().id)
        with patch.dict(os.environ, {"ADMIN_API_TOKEN": "s3cret-admin"}):
            denied = self.client.post(f"/api/deliveries/{delivery_id}/cancel")
            allowed = self.client.post(
                f"/api/deliveries/{delivery_id}/cancel",
                json={"reason": "duplicate"},
                headers={"Authorization": "Bearer s3cret-admin"},
            )
        self.assertEqual(denied.status_code, 403)
        self.assertEqual(allowed.status_code, 200)
        self.assertEqual(self.reload(Delivery, delivery_id).status, DeliveryStatus.CANCELLED.value)

    def test_rider_status_route(self):
        rider_id = int(make_rider(status=RiderStatus.OFFLINE).id)
        res = self.client.post(f"/api/riders/{rider_id}/status", json={"status": "AVAILABLE"})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(self.reload(Rider, rider_id).status, RiderStatus.AVAILABLE.value)

    def test_list_filters_by_status(self):
        paid_order()
        paid_order(rider=False)
        res = self.client.get("/api/deliveries?status=PENDING")
        self.assertEqual(res.status_code, 200)
        items = (res.get_json() or {}).get("items") or []
        self.assertEqual(len(items), 1)
        self.assertEqual(items[0]["status"], DeliveryStatus.PENDING.value)


if __name__ == "__main__":
    unittest.main()
