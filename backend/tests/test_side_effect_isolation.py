from __future__ import annotations

import unittest
from unittest.mock import patch

from orderflow.extensions import db
from orderflow.models import Order, StockLevel
from orderflow.services.payment_reconciliation import PaymentConfirmation, confirm_payment

from orderflow_testkit import OrderFlowTestCase


class SideEffectFailureTestCase(OrderFlowTestCase):
    """Broadcast and inventory failures happen after commit and must not undo settlement."""

    def setUp(self):
        super().setUp()
        with self.app.app_context():
            db.session.add(StockLevel(sku="MEAL-1", quantity=10))
            db.session.commit()
        self.driver_id = self.seed_driver()
        self.set_driver_pay(enabled=True, amount=150)
        self.order_id = self.make_order(payment_method="mobile_money", driver_id=self.driver_id, sku="MEAL-1")
        with self.app.app_context():
            confirm_payment(
                PaymentConfirmation(
                    order_id=self.order_id, source="gateway", payment_method="mobile_money", payment_provider="mpesa"
                )
            )
        self.advance(self.order_id, "preparing", "out_for_delivery")

    def _assert_settled(self):
        with self.app.app_context():
            order = db.session.get(Order, self.order_id)
            self.assertEqual(order.status, "completed")
            self.assertTrue(order.driver_pay_credited)
        self.assertEqual(self.merchant_wallet()["balance"], 1050.0)
        self.assertEqual(self.driver_wallet(self.driver_id)["balance"], 200.0)

    def _stock(self) -> int:
        with self.app.app_context():
            return int(StockLevel.query.filter_by(sku="MEAL-1").first().quantity)

    def test_broadcast_failure_keeps_settlement_and_inventory(self):
        with patch(
            "orderflow.services.side_effects.broadcast_order_update", side_effect=ConnectionError("redis down")
        ) as publish:
            outcome = self.advance(self.order_id, "delivered")
        self.assertEqual(outcome.steps, ["delivered", "completed"])
        self.assertTrue(publish.called)
        self._assert_settled()
        self.assertEqual(self._stock(), 9)

    def test_inventory_failure_keeps_settlement_and_broadcast(self):
        with patch(
            "orderflow.services.inventory_service.decrease_inventory_for_order", side_effect=RuntimeError("stock db gone")
        ) as decrement, patch("orderflow.services.side_effects.broadcast_order_update") as publish:
            outcome = self.advance(self.order_id, "delivered")
        self.assertEqual(outcome.to_status, "completed")
        decrement.assert_called_once_with(self.order_id)
        events = [c.kwargs.get("event") for c in publish.call_args_list]
        self.assertIn("order-settled", events)
        self._assert_settled()
        self.assertEqual(self._stock(), 10)

    def test_both_failing_still_returns_the_settlement(self):
        with patch(
            "orderflow.services.side_effects.broadcast_order_update", side_effect=ConnectionError("redis down")
        ), patch("orderflow.services.inventory_service.decrease_inventory_for_order", side_effect=RuntimeError("boom")):
            outcome = self.advance(self.order_id, "delivered")
        self.assertTrue(outcome.settlement.settled)
        self._assert_settled()


if __name__ == "__main__":
    unittest.main()
