from __future__ import annotations

import unittest

from tests.factories import PipelineTestCase


class ApiErrorContractTestCase(PipelineTestCase):
    def test_unknown_api_route_returns_json_error_shape(self):
        res = self.client.get("/api/does-not-exist")
        self.assertEqual(res.status_code, 404)
        self.assertTrue(res.is_json)
        body = res.get_json(force=True) or {}
        self.assertFalse(bool(body.get("ok", True)))
        self.assertTrue(str(body.get("error") or "").strip())
        self.assertTrue(str(body.get("message") or "").strip())
        self.assertEqual(int(body.get("status") or 0), 404)
        self.assertTrue(str(body.get("trace_id") or "").strip())

    def test_domain_errors_share_the_shape(self):
        res = self.client.post("/api/orders", json={"items": []})
        self.assertEqual(res.status_code, 400)
        body = res.get_json(force=True) or {}
        self.assertFalse(body.get("ok", True))
        self.assertEqual(body.get("error"), "VALIDATION_ERROR")
        self.assertTrue(str(body.get("message") or "").strip())
        self.assertTrue(str(body.get("trace_id") or "").strip())


if __name__ == "__main__":
    unittest.main()
