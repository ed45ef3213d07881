from __future__ import annotations

import unittest

from orderflow_testkit import OrderFlowTestCase


class ApiErrorContractTestCase(OrderFlowTestCase):
    def _assert_error_shape(self, res, status: int, error: str | None = None):
        self.assertEqual(res.status_code, status)
        self.assertTrue(res.is_json)
        body = res.get_json(force=True) or {}
        self.assertFalse(bool(body.get("ok", True)))
        self.assertTrue(str(body.get("error") or "").strip())
        self.assertTrue(str(body.get("message") or "").strip())
        self.assertEqual(int(body.get("status") or 0), status)
        self.assertTrue(str(body.get("trace_id") or "").strip())
        if error:
            self.assertEqual(body.get("error"), error)
        return body

    def test_unknown_api_route_returns_json_error_shape(self):
        res = self.client.get("/api/does-not-exist")
        self._assert_error_shape(res, 404)

    def test_missing_order_returns_domain_error(self):
        res = self.client.get("/api/orders/999", headers=self.auth("admin", 1))
        body = self._assert_error_shape(res, 404, "ORDER_NOT_FOUND")
        self.assertEqual(body.get("order_id"), 999)

    def test_missing_token_is_unauthenticated(self):
        res = self.client.get("/api/admin/wallet")
        self._assert_error_shape(res, 401, "UNAUTHENTICATED")

    def test_garbage_token_is_unauthenticated(self):
        res = self.client.get("/api/admin/wallet", headers={"Authorization": "Bearer not-a-jwt"})
        self._assert_error_shape(res, 401, "UNAUTHENTICATED")

    def test_invalid_order_payload(self):
        res = self.client.post("/api/orders", json={"items": [{"name": "Chapati", "price": 30}], "payment_type": "later"})
        self._assert_error_shape(res, 400, "INVALID_REQUEST")

    def test_create_order_returns_frozen_breakdown(self):
        res = self.client.post(
            "/api/orders",
            json={
                "items": [{"name": "Pilau", "price": 450, "quantity": 2}],
                "delivery_fee": 150,
                "tip_amount": 20,
                "payment_type": "pay_on_delivery",
                "payment_method": "cash",
            },
        )
        self.assertEqual(res.status_code, 201)
        order = res.get_json()["order"]
        self.assertEqual(order["status"], "pending")
        self.assertEqual(order["total_amount"], 1070.0)
        self.assertEqual(order["financials"]["items_total"], 900.0)
        self.assertEqual(order["financials"]["delivery_fee"], 150.0)
        self.assertEqual(order["financials"]["tip_amount"], 20.0)


if __name__ == "__main__":
    unittest.main()
