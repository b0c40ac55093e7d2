from __future__ import annotations

import os
import unittest
from types import SimpleNamespace
from unittest.mock import patch

from app.utils import rate_limit
from tests.factories import PipelineTestCase


class FixedWindowTestCase(unittest.TestCase):
    def setUp(self):
        rate_limit._reset_rate_limit_state_for_tests()

    def test_memory_window_denies_past_the_limit(self):
        with patch.dict(os.environ, {"RATE_LIMIT_REDIS_URL": "", "REDIS_URL": ""}):
            self.assertEqual(rate_limit.check_limit("k1", limit=2, window_seconds=60), (True, 0))
            self.assertEqual(rate_limit.check_limit("k1", limit=2, window_seconds=60), (True, 0))
            allowed, retry_after = rate_limit.check_limit("k1", limit=2, window_seconds=60)
            self.assertFalse(allowed)
            self.assertGreaterEqual(retry_after, 1)
            self.assertTrue(rate_limit.check_limit("k2", limit=2, window_seconds=60)[0])
        self.assertGreaterEqual(rate_limit.limiter_stats()["memory_hits"], 1)

    def test_client_ip_honours_proxy_headers_only_when_trusted(self):
        req = SimpleNamespace(headers={"X-Forwarded-For": "41.58.1.2, 10.0.0.1"}, remote_addr="10.0.0.9")
        self.assertEqual(rate_limit.resolve_client_ip(req, trusted_proxy=True), "41.58.1.2")
        self.assertEqual(rate_limit.resolve_client_ip(req, trusted_proxy=False), "10.0.0.9")


class WebhookRateLimitTestCase(PipelineTestCase):
    def test_limited_webhook_answers_429(self):
        with patch.dict(os.environ, {"RATE_LIMIT_IN_TESTS": "true"}), patch(
            "app.utils.rate_limit.check_limit", return_value=(False, 7)
        ):
            res = self.client.post("/api/webhooks/paystack", data=b"{}", headers={"Content-Type": "application/json"})
        self.assertEqual(res.status_code, 429)
        self.assertEqual(res.headers.get("Retry-After"), "7")
        self.assertEqual((res.get_json() or {}).get("error"), "RATE_LIMITED")

    def test_disabled_limiter_lets_requests_through(self):
        with patch.dict(os.environ, {"RATE_LIMIT_IN_TESTS": "true", "ENABLE_RATE_LIMIT": "false"}), patch(
            "app.utils.rate_limit.check_limit", return_value=(False, 7)
        ):
            res = self.client.post("/api/webhooks/paystack", data=b"{}", headers={"Content-Type": "application/json"})
        self.assertEqual(res.status_code, 400)


if __name__ == "__main__":
    unittest.main()
