from __future__ import annotations

import unittest

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from orderflow.extensions import db
from orderflow.jobs.payment_jobs import run_ledger_reconciliation
from orderflow.models import AdminWallet, JobRun, ReconciliationReport
from orderflow.models.admin_wallet import MERCHANT_WALLET_KEY
from orderflow.services.actors import Actor
from orderflow.services.errors import InvalidRequest, Unauthorized
from orderflow.services.order_service import record_refund
from orderflow.services.payment_reconciliation import PaymentConfirmation, confirm_payment
from orderflow.services.reconciliation_service import recompute_wallet_balances
from orderflow.services.wallet_service import get_admin_wallet

from orderflow_testkit import ADMIN, OrderFlowTestCase


class SettledOrderTestCase(OrderFlowTestCase):
    """One prepaid delivery order, settled with driver pay 150 out of a 200 fee."""

    def setUp(self):
        super().setUp()
        self.driver_id = self.seed_driver()
        self.set_driver_pay(enabled=True, amount=150)
        self.order_id = self.make_order(payment_method="mobile_money", driver_id=self.driver_id)
        with self.app.app_context():
            confirm_payment(
                PaymentConfirmation(
                    order_id=self.order_id, source="gateway", payment_method="mobile_money", payment_provider="mpesa"
                )
            )
        self.advance(self.order_id, "preparing", "out_for_delivery", "delivered")


class LedgerReconciliationTestCase(SettledOrderTestCase):
    def test_settled_wallets_match_the_ledger(self):
        with self.app.app_context():
            summary = recompute_wallet_balances()
        self.assertEqual(summary["wallet_count"], 2)
        self.assertEqual(summary["drift_count"], 0)

    def test_tampered_balance_is_reported(self):
        with self.app.app_context():
            db.session.execute(update(AdminWallet).values(balance=AdminWallet.balance + 5))
            db.session.commit()
            summary = recompute_wallet_balances()
        self.assertEqual(summary["drift_count"], 1)
        item = summary["drift_items"][0]
        self.assertEqual(item["wallet"], "merchant")
        self.assertEqual(item["drift"], 5.0)
        self.assertEqual(item["computed_balance"], 1050.0)

    def test_refund_is_a_compensating_entry(self):
        with self.app.app_context():
            entry = record_refund(self.order_id, actor=ADMIN, amount=100, reason="cold food")
            self.assertEqual(entry.transaction_type, "refund")
            self.assertEqual(recompute_wallet_balances()["drift_count"], 0)
            with self.assertRaises(InvalidRequest):
                record_refund(self.order_id, actor=ADMIN, amount=2000)
            with self.assertRaises(Unauthorized):
                record_refund(self.order_id, actor=Actor("driver", self.driver_id), amount=1)
        wallet = self.merchant_wallet()
        self.assertEqual(wallet["balance"], 950.0)
        self.assertEqual(wallet["total_revenue"], 950.0)
        order = self.order_dict(self.order_id)
        self.assertEqual(order["status"], "completed")
        self.assertTrue(order["driver_pay_credited"])

    def test_refund_needs_a_settled_order(self):
        open_order = self.make_order()
        with self.app.app_context():
            with self.assertRaises(InvalidRequest):
                record_refund(open_order, actor=ADMIN, amount=10)

    def test_job_records_run_and_report(self):
        with self.app.app_context():
            summary = run_ledger_reconciliation()
            self.assertEqual(summary["drift_count"], 0)
            self.assertEqual(ReconciliationReport.query.count(), 1)
            run = JobRun.query.filter_by(job_name="ledger_reconciliation").first()
            self.assertTrue(run.ok)
            self.assertEqual(run.processed, 2)


class AdminLedgerApiTestCase(SettledOrderTestCase):
    def test_reconciliation_endpoint_persists_report(self):
        res = self.client.get("/api/admin/reconciliation?persist=1", headers=self.auth("admin", 1))
        self.assertEqual(res.status_code, 200)
        body = res.get_json()
        self.assertEqual(body["summary"]["drift_count"], 0)
        self.assertEqual(body["latest_report"]["id"], body["summary"]["report_id"])

    def test_transactions_listing_filters(self):
        res = self.client.get(
            f"/api/admin/transactions?order_id={self.order_id}&transaction_type=delivery_pay",
            headers=self.auth("admin", 1),
        )
        self.assertEqual(res.status_code, 200)
        amounts = sorted(i["amount"] for i in res.get_json()["items"])
        self.assertEqual(amounts, [50.0, 150.0])

        res = self.client.get("/api/admin/transactions?transaction_type=bonus", headers=self.auth("admin", 1))
        self.assertEqual(res.status_code, 400)

    def test_order_detail_includes_ledger(self):
        res = self.client.get(f"/api/orders/{self.order_id}", headers=self.auth("driver", self.driver_id))
        self.assertEqual(res.status_code, 200)
        types = sorted(t["transaction_type"] for t in res.get_json()["order"]["transactions"])
        self.assertEqual(types, ["delivery_pay", "delivery_pay", "payment", "tip"])

        stranger = self.seed_driver(name="Driver Two", phone="254711000002")
        res = self.client.get(f"/api/orders/{self.order_id}", headers=self.auth("driver", stranger))
        self.assertEqual(res.status_code, 403)

    def test_driver_pay_settings_round_trip(self):
        res = self.client.put(
            "/api/admin/settings/driver-pay",
            json={"enabled": True, "amount": 120},
            headers=self.auth("admin", 1),
        )
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.get_json()["settings"], {"enabled": True, "amount": 120.0})
        res = self.client.put(
            "/api/admin/settings/driver-pay",
            json={"enabled": "yes", "amount": 120},
            headers=self.auth("admin", 1),
        )
        self.assertEqual(res.status_code, 400)

    def test_refund_endpoint(self):
        res = self.client.post(
            f"/api/admin/orders/{self.order_id}/refund",
            json={"amount": 25, "reason": "missing drink"},
            headers=self.auth("admin", 1),
        )
        self.assertEqual(res.status_code, 201)
        self.assertEqual(res.get_json()["wallet"]["balance"], 1025.0)

    def test_manual_settle_endpoint_is_idempotent(self):
        res = self.client.post(f"/api/admin/orders/{self.order_id}/settle", headers=self.auth("admin", 1))
        self.assertEqual(res.status_code, 200)
        self.assertTrue(res.get_json()["settlement"]["already_settled"])


class MerchantWalletSingletonTestCase(OrderFlowTestCase):
    def test_merchant_wallet_is_created_once(self):
        with self.app.app_context():
            first = get_admin_wallet()
            db.session.commit()
            self.assertEqual(get_admin_wallet().id, first.id)
            self.assertEqual(first.singleton_key, MERCHANT_WALLET_KEY)

            db.session.add(AdminWallet(singleton_key=MERCHANT_WALLET_KEY))
            with self.assertRaises(IntegrityError):
                db.session.commit()
            db.session.rollback()
            self.assertEqual(AdminWallet.query.count(), 1)

    def test_settlements_share_one_merchant_wallet(self):
        driver_id = self.seed_driver()
        for _ in range(2):
            order_id = self.make_order(payment_method="mobile_money", driver_id=driver_id)
            with self.app.app_context():
                confirm_payment(
                    PaymentConfirmation(
                        order_id=order_id, source="gateway", payment_method="mobile_money", payment_provider="mpesa"
                    )
                )
            self.advance(order_id, "preparing", "out_for_delivery", "delivered")
        with self.app.app_context():
            self.assertEqual(AdminWallet.query.count(), 1)
        self.assertEqual(self.merchant_wallet()["total_orders"], 2)


if __name__ == "__main__":
    unittest.main()
