from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from orderflow.extensions import db
from orderflow.models import Driver, OrderTransition
from orderflow.services.actors import Actor
from orderflow.services.errors import (
    InvalidRequest,
    InvalidTransition,
    PaymentNotConfirmed,
    SettlementConflict,
    Unauthorized,
)
from orderflow.services.order_locks import serialized
from orderflow.services.order_state_machine import advance_status, check_transition

from orderflow_testkit import ADMIN, POS, OrderFlowTestCase


class TransitionTableTestCase(unittest.TestCase):
    def test_forward_single_steps_are_allowed(self):
        for current, target in (
            ("pending", "confirmed"),
            ("confirmed", "preparing"),
            ("preparing", "out_for_delivery"),
            ("out_for_delivery", "delivered"),
            ("delivered", "completed"),
            ("pos_order", "completed"),
            ("pending", "cancelled"),
            ("out_for_delivery", "cancelled"),
        ):
            check_transition(current, target)

    def test_rejected_transitions(self):
        for current, target in (
            ("pending", "preparing"),
            ("preparing", "confirmed"),
            ("out_for_delivery", "completed"),
            ("completed", "delivered"),
            ("delivered", "cancelled"),
            ("completed", "cancelled"),
            ("cancelled", "pending"),
            ("cancelled", "confirmed"),
            ("pos_order", "delivered"),
            ("pending", "pos_order"),
            ("confirmed", "confirmed"),
        ):
            with self.assertRaises(InvalidTransition, msg=f"{current}->{target}"):
                check_transition(current, target)


class OrderStateMachineTestCase(OrderFlowTestCase):
    def setUp(self):
        super().setUp()
        self.driver_id = self.seed_driver()
        self.driver = Actor("driver", self.driver_id)

    def test_driver_cannot_set_preparing(self):
        order_id = self.make_order(driver_id=self.driver_id)
        self.advance(order_id, "confirmed")
        with self.app.app_context():
            with self.assertRaises(InvalidTransition) as ctx:
                advance_status(order_id, "preparing", actor=self.driver)
        self.assertEqual(ctx.exception.current, "confirmed")
        self.assertEqual(self.order_dict(order_id)["status"], "confirmed")

    def test_skipping_and_moving_backward_are_rejected(self):
        order_id = self.make_order()
        with self.app.app_context():
            with self.assertRaises(InvalidTransition):
                advance_status(order_id, "preparing", actor=ADMIN)
            advance_status(order_id, "confirmed", actor=ADMIN)
            advance_status(order_id, "preparing", actor=ADMIN)
            with self.assertRaises(InvalidTransition):
                advance_status(order_id, "confirmed", actor=ADMIN)
        self.assertEqual(self.order_dict(order_id)["status"], "preparing")

    def test_unknown_status_is_an_invalid_request(self):
        order_id = self.make_order()
        with self.app.app_context():
            with self.assertRaises(InvalidRequest):
                advance_status(order_id, "shipped", actor=ADMIN)

    def test_cancelled_is_final(self):
        order_id = self.make_order()
        self.advance(order_id, "confirmed", "cancelled")
        with self.app.app_context():
            for target in ("pending", "confirmed", "completed"):
                with self.assertRaises(InvalidTransition):
                    advance_status(order_id, target, actor=ADMIN)

    def test_pay_on_delivery_needs_payment_before_delivered(self):
        order_id = self.make_order(payment_type="pay_on_delivery", payment_method="cash", driver_id=self.driver_id)
        self.advance(order_id, "confirmed", "preparing", "out_for_delivery")
        with self.app.app_context():
            with self.assertRaises(PaymentNotConfirmed):
                advance_status(order_id, "delivered", actor=self.driver)
        order = self.order_dict(order_id)
        self.assertEqual(order["status"], "out_for_delivery")
        self.assertFalse(order["driver_pay_credited"])

    def test_unpaid_pay_now_order_cannot_complete(self):
        order_id = self.make_order(driver_id=self.driver_id)
        outcome = self.advance(order_id, "confirmed", "preparing", "out_for_delivery", "delivered")
        self.assertEqual(outcome.steps, ["delivered"])
        with self.app.app_context():
            with self.assertRaises(PaymentNotConfirmed):
                advance_status(order_id, "completed", actor=ADMIN)
        self.assertEqual(self.order_dict(order_id)["status"], "delivered")
        self.assertEqual(self.merchant_wallet()["balance"], 0.0)

    def test_other_driver_is_unauthorized(self):
        other = self.seed_driver(name="Driver Two", phone="254711000002")
        order_id = self.make_order(driver_id=self.driver_id)
        self.advance(order_id, "confirmed", "preparing")
        with self.app.app_context():
            with self.assertRaises(Unauthorized):
                advance_status(order_id, "out_for_delivery", actor=Actor("driver", other))

    def test_pos_terminal_cannot_move_delivery_orders(self):
        order_id = self.make_order()
        with self.app.app_context():
            with self.assertRaises(Unauthorized):
                advance_status(order_id, "confirmed", actor=POS)

    def test_driver_status_follows_delivery(self):
        order_id = self.make_order(driver_id=self.driver_id)
        self.advance(order_id, "confirmed", "preparing")
        self.advance(order_id, "out_for_delivery", actor=self.driver)
        with self.app.app_context():
            self.assertEqual(db.session.get(Driver, self.driver_id).status, "on_delivery")
        self.advance(order_id, "cancelled")
        with self.app.app_context():
            self.assertEqual(db.session.get(Driver, self.driver_id).status, "active")

    def test_idempotency_key_replays_without_new_transition(self):
        order_id = self.make_order()
        with self.app.app_context():
            first = advance_status(order_id, "confirmed", actor=ADMIN, idempotency_key="req-1")
            second = advance_status(order_id, "confirmed", actor=ADMIN, idempotency_key="req-1")
            self.assertFalse(first.replayed)
            self.assertTrue(second.replayed)
            self.assertEqual(OrderTransition.query.filter_by(order_id=order_id).count(), 1)

    def test_busy_order_lock_raises_settlement_conflict(self):
        order_id = self.make_order()
        with patch.dict(os.environ, {"ORDER_LOCK_TIMEOUT_SECONDS": "0.05"}):
            with self.app.app_context():
                with serialized(f"order:{order_id}"):
                    with self.assertRaises(SettlementConflict):
                        advance_status(order_id, "confirmed", actor=ADMIN)
        self.assertEqual(self.order_dict(order_id)["status"], "pending")


class OrderStatusApiTestCase(OrderFlowTestCase):
    def setUp(self):
        super().setUp()
        self.driver_id = self.seed_driver()

    def test_driver_moves_order_out_for_delivery(self):
        order_id = self.make_order(driver_id=self.driver_id)
        self.advance(order_id, "confirmed", "preparing")
        res = self.client.patch(
            f"/api/driver-orders/{order_id}/status",
            json={"status": "out_for_delivery"},
            headers={**self.auth("driver", self.driver_id), "Idempotency-Key": "drv-1"},
        )
        self.assertEqual(res.status_code, 200)
        body = res.get_json()
        self.assertEqual(body["status"], "out_for_delivery")
        self.assertEqual(body["from_status"], "preparing")

        replay = self.client.patch(
            f"/api/driver-orders/{order_id}/status",
            json={"status": "out_for_delivery"},
            headers={**self.auth("driver", self.driver_id), "Idempotency-Key": "drv-1"},
        )
        self.assertEqual(replay.status_code, 200)
        self.assertTrue(replay.get_json()["replayed"])

    def test_other_driver_cannot_replay_a_stored_key(self):
        stranger = self.seed_driver(name="Driver Two", phone="254711000002")
        order_id = self.make_order(driver_id=self.driver_id)
        self.advance(order_id, "confirmed")
        res = self.client.patch(
            f"/api/driver-orders/{order_id}/status",
            json={"status": "confirmed"},
            headers={**self.auth("driver", stranger), "Idempotency-Key": f"order:{order_id}:pending->confirmed"},
        )
        self.assertEqual(res.status_code, 403)
        body = res.get_json()
        self.assertEqual(body["error"], "UNAUTHORIZED")
        self.assertNotIn("order", body)

    def test_key_from_another_transition_is_not_replayed(self):
        order_id = self.make_order(driver_id=self.driver_id)
        self.advance(order_id, "confirmed", "preparing")
        res = self.client.patch(
            f"/api/driver-orders/{order_id}/status",
            json={"status": "out_for_delivery"},
            headers={**self.auth("driver", self.driver_id), "Idempotency-Key": f"order:{order_id}:pending->confirmed"},
        )
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.get_json()["error"], "INVALID_REQUEST")
        self.assertEqual(self.order_dict(order_id)["status"], "preparing")

    def test_driver_preparing_returns_invalid_transition_envelope(self):
        order_id = self.make_order(driver_id=self.driver_id)
        self.advance(order_id, "confirmed")
        res = self.client.patch(
            f"/api/driver-orders/{order_id}/status",
            json={"status": "preparing"},
            headers=self.auth("driver", self.driver_id),
        )
        self.assertEqual(res.status_code, 400)
        body = res.get_json()
        self.assertFalse(body["ok"])
        self.assertEqual(body["error"], "INVALID_TRANSITION")
        self.assertEqual(body["current_status"], "confirmed")
        self.assertEqual(body["requested_status"], "preparing")
        self.assertEqual(body["order_id"], order_id)
        self.assertTrue(body["trace_id"])

    def test_admin_route_rejects_driver_token(self):
        order_id = self.make_order()
        res = self.client.patch(
            f"/api/admin/orders/{order_id}/status",
            json={"status": "confirmed"},
            headers=self.auth("driver", self.driver_id),
        )
        self.assertEqual(res.status_code, 403)
        self.assertEqual(res.get_json()["error"], "FORBIDDEN")

    def test_busy_order_returns_conflict(self):
        order_id = self.make_order()
        with patch.dict(os.environ, {"ORDER_LOCK_TIMEOUT_SECONDS": "0.05"}):
            with serialized(f"order:{order_id}"):
                res = self.client.patch(
                    f"/api/admin/orders/{order_id}/status",
                    json={"status": "confirmed"},
                    headers=self.auth("admin", 1),
                )
        self.assertEqual(res.status_code, 409)
        self.assertEqual(res.get_json()["error"], "SETTLEMENT_CONFLICT")

    def test_assign_then_driver_accepts(self):
        order_id = self.make_order()
        res = self.client.post(
            f"/api/admin/orders/{order_id}/assign-driver",
            json={"driver_id": self.driver_id},
            headers=self.auth("admin", 1),
        )
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["order"]["driver_id"], self.driver_id)

        res = self.client.post(
            f"/api/driver-orders/{order_id}/respond",
            json={"accepted": True},
            headers=self.auth("driver", self.driver_id),
        )
        self.assertEqual(res.status_code, 200)
        self.assertTrue(res.get_json()["order"]["driver_accepted"])

        res = self.client.get("/api/driver-orders", headers=self.auth("driver", self.driver_id))
        self.assertEqual([o["id"] for o in res.get_json()["items"]], [order_id])


if __name__ == "__main__":
    unittest.main()
