from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from flask import Flask

from app.utils.observability import _before_send_scrub, init_sentry


class SentryOptionalInitTestCase(unittest.TestCase):
    def test_sentry_init_is_noop_without_dsn(self):
        app = Flask(__name__)
        with patch.dict(os.environ, {"SENTRY_DSN": ""}, clear=False), patch("sentry_sdk.init") as init:
            init_sentry(app)
        init.assert_not_called()

    def test_webhook_signatures_are_scrubbed(self):
        event = {
            "request": {
                "headers": {
                    "X-Paystack-Signature": "abc",
                    "Authorization": "Bearer secret",
                    "Content-Type": "application/json",
                }
            }
        }
        headers = _before_send_scrub(event, None)["request"]["headers"]
        self.assertEqual(headers["X-Paystack-Signature"], "[REDACTED]")
        self.assertEqual(headers["Authorization"], "[REDACTED]")
        self.assertEqual(headers["Content-Type"], "application/json")


if __name__ == "__main__":
    unittest.main()
