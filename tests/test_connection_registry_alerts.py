from __future__ import annotations

import json
import os
import unittest
from unittest.mock import patch

from app.integrations.messaging.mock_provider import MockMessagingProvider
from app.models import Notification, PlatformEvent, Severity
from app.services import notification_service
from app.utils.connection_registry import ALERTS_TOPIC, ConnectionRegistry, registry
from app.utils.events import log_event
from tests.factories import PipelineTestCase


class ConnectionRegistryTestCase(unittest.TestCase):
    def test_broadcast_reaches_only_the_topic(self):
        reg = ConnectionRegistry()
        alerts = reg.subscribe("alerts")
        other = reg.subscribe("orders")

        self.assertEqual(reg.broadcast("alerts", {"n": 1}), 1)
        self.assertEqual(alerts.get(timeout=0.1), {"n": 1})
        self.assertIsNone(other.get(timeout=0.01))

    def test_send_to_targets_a_recipient(self):
        reg = ConnectionRegistry()
        ops = reg.subscribe("alerts", recipient_id="ops-1")
        reg.subscribe("alerts", recipient_id="ops-2")

        self.assertEqual(reg.send_to("ops-1", {"hello": True}), 1)
        self.assertEqual(ops.get(timeout=0.1), {"hello": True})
        self.assertEqual(reg.send_to("", {"x": 1}), 0)

    def test_slow_consumer_drops_oldest(self):
        reg = ConnectionRegistry()
        sub = reg.subscribe("alerts")
        for i in range(205):
            reg.broadcast("alerts", {"i": i})
        self.assertEqual(sub.get(timeout=0.1), {"i": 5})

    def test_unsubscribe_stops_delivery(self):
        reg = ConnectionRegistry()
        sub = reg.subscribe("alerts")
        self.assertEqual(reg.connection_count("alerts"), 1)
        reg.unsubscribe(sub)
        self.assertEqual(reg.connection_count(), 0)
        self.assertEqual(reg.broadcast("alerts", {"n": 1}), 0)


class OperationalAlertTestCase(PipelineTestCase):
    def setUp(self):
        super().setUp()
        self.sub = registry.subscribe(ALERTS_TOPIC)

    def tearDown(self):
        registry.unsubscribe(self.sub)
        super().tearDown()

    def test_high_events_are_pushed_live(self):
        log_event("sweep_note", severity=Severity.INFO, message="routine")
        self.assertIsNone(self.sub.get(timeout=0.01))

        event = log_event(
            "payment_amount_mismatch",
            severity=Severity.HIGH,
            message="expected 10000, got 9500",
            subject_type="order",
            subject_id=7,
            metadata={"paid_minor": 950000},
        )
        pushed = self.sub.get(timeout=0.1)
        self.assertEqual(pushed["id"], int(event.id))
        self.assertEqual(pushed["severity"], "HIGH")
        self.assertEqual(pushed["subject_id"], "7")
        self.assertEqual(PlatformEvent.query.count(), 2)

    def test_admin_phones_receive_high_and_critical_alerts(self):
        with patch.dict(os.environ, {"ADMIN_ALERT_PHONES": "08010000001, 08010000002"}):
            log_event("refund_failed", severity=Severity.CRITICAL, message="refund for ORD-1 failed")
            log_event("order_cancelled_out_of_stock", severity=Severity.MEDIUM, message="sold out")

        for phone in ("08010000001", "08010000002"):
            sent = MockMessagingProvider.sent_to(phone)
            self.assertEqual(len(sent), 1)
            self.assertTrue(sent[0]["body"].startswith("[CRITICAL] refund_failed"))

    def test_idempotency_key_deduplicates_events(self):
        first = log_event("no_rider_available", severity=Severity.HIGH, idempotency_key="delivery:1:no_rider")
        second = log_event("no_rider_available", severity=Severity.HIGH, idempotency_key="delivery:1:no_rider")
        self.assertEqual(int(first.id), int(second.id))
        self.assertEqual(PlatformEvent.query.count(), 1)

    def test_write_failure_never_raises(self):
        with patch("app.utils.events.db.session.commit", side_effect=RuntimeError("db gone")):
            self.assertIsNone(log_event("anything", severity=Severity.HIGH))
        self.assertIsNone(self.sub.get(timeout=0.01))

    def test_alert_listing_filters(self):
        log_event("a", severity=Severity.HIGH)
        log_event("b", severity=Severity.MEDIUM)
        log_event("a", severity=Severity.CRITICAL)

        res = self.client.get("/api/admin/alerts?severity=high")
        items = (res.get_json() or {}).get("items") or []
        self.assertEqual([i["event_type"] for i in items], ["a"])

        res = self.client.get("/api/admin/alerts?event_type=a")
        self.assertEqual(len((res.get_json() or {}).get("items") or []), 2)

        bad = self.client.get("/api/admin/alerts?severity=loud")
        self.assertEqual(bad.status_code, 400)

    def test_alert_stream_announces_then_forwards(self):
        with patch.dict(os.environ, {"ALERT_STREAM_HEARTBEAT_SECONDS": "1"}):
            res = self.client.get("/api/admin/alerts/stream", buffered=False)
            self.assertEqual(res.status_code, 200)
            self.assertTrue(res.mimetype.startswith("text/event-stream"))
            stream = iter(res.response)
            ready = next(stream)
            self.assertIn(b"event: ready", ready)
            self.assertEqual(registry.connection_count(ALERTS_TOPIC), 2)

            log_event("delivery_cancelled", severity=Severity.HIGH, message="cancelled by admin")
            chunk = next(stream)
            self.assertTrue(chunk.startswith(b"event: alert"))
            data = json.loads(chunk.decode("utf-8").split("data: ", 1)[1])
            self.assertEqual(data["event_type"], "delivery_cancelled")
            res.close()
        self.assertEqual(registry.connection_count(ALERTS_TOPIC), 1)


class NotificationDeliveryTestCase(PipelineTestCase):
    def test_every_send_is_recorded(self):
        self.assertTrue(notification_service.send_text("08020000001", "hello", purpose="greeting"))
        self.assertFalse(notification_service.send_text("08020000001", "[fail] hello", purpose="greeting"))

        rows = Notification.query.order_by(Notification.id.asc()).all()
        self.assertEqual([r.status for r in rows], ["sent", "failed"])
        self.assertEqual(json.loads(rows[0].meta)["purpose"], "greeting")
        failed_event = PlatformEvent.query.filter_by(event_type="notification_failed").one()
        self.assertEqual(failed_event.severity, "MEDIUM")

    def test_blank_recipient_is_skipped(self):
        self.assertFalse(notification_service.send_text("", "nobody"))
        self.assertEqual(Notification.query.count(), 0)

    def test_batch_waits_between_sends(self):
        with patch("app.services.notification_service.time.sleep") as sleep:
            result = notification_service.send_batch(["0801", "0802", "0803"], "promo", delay_ms=1000)
        self.assertEqual(result, {"sent": 3, "failed": 0, "total": 3})
        self.assertEqual(sleep.call_count, 2)
        sleep.assert_called_with(1.0)

    def test_batch_counts_failures_without_stopping(self):
        with patch.dict(os.environ, {"MOCK_NOTIFY_FORCE_FAIL": "1"}):
            result = notification_service.send_batch(["0801", "0802"], "promo", record_failures=False)
        self.assertEqual(result["failed"], 2)
        self.assertEqual(PlatformEvent.query.count(), 0)
        self.assertEqual(Notification.query.filter_by(status="failed").count(), 2)


if __name__ == "__main__":
    unittest.main()
