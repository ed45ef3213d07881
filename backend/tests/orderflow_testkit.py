from __future__ import annotations

import os
import unittest
from unittest.mock import patch

from orderflow import create_app
from orderflow.extensions import db
from orderflow.models import Driver, Order, Transaction
from orderflow.services.actors import Actor
from orderflow.services.order_service import build_order
from orderflow.services.order_state_machine import advance_status
from orderflow.services.wallet_service import get_admin_wallet, get_driver_wallet
from orderflow.utils.jwt_utils import create_token
from orderflow.utils.settings_store import save_driver_pay_settings

TEST_ENV = {
    "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
    "DATABASE_URL": "sqlite:///:memory:",
    "ORDERFLOW_ENV": "test",
    "PAYMENTS_PROVIDER": "mock",
    "MPESA_CALLBACK_QUEUE": "false",
    "INVENTORY_QUEUE": "false",
    "ENABLE_BROADCAST": "false",
    "SENTRY_DSN": "",
    "OTEL_ENABLED": "",
    "ORDER_LOCK_TIMEOUT_SECONDS": "2",
}

ADMIN = Actor("admin", 1)
POS = Actor("pos", 7)


class OrderFlowTestCase(unittest.TestCase):
    """Fresh in-memory database per test; the test client runs outside any pushed app context."""

    @classmethod
    def setUpClass(cls):
        cls._env_patch = patch.dict(os.environ, TEST_ENV, clear=False)
        cls._env_patch.start()
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        cls.client = cls.app.test_client()

    @classmethod
    def tearDownClass(cls):
        cls._env_patch.stop()

    def setUp(self):
        with self.app.app_context():
            db.drop_all()
            db.create_all()

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()

    # -- seeding ---------------------------------------------------------

    def seed_driver(self, name: str = "Driver One", phone: str = "254711000001") -> int:
        with self.app.app_context():
            driver = Driver(name=name, phone=phone, status="active")
            db.session.add(driver)
            db.session.commit()
            return int(driver.id)

    def set_driver_pay(self, *, enabled: bool, amount=0) -> None:
        with self.app.app_context():
            save_driver_pay_settings(enabled=enabled, amount=amount)

    def make_order(
        self,
        *,
        items_total=1000,
        delivery_fee=200,
        tip=50,
        payment_type: str = "pay_now",
        payment_method: str | None = None,
        driver_id: int | None = None,
        sku: str | None = None,
    ) -> int:
        with self.app.app_context():
            item = {"name": "Family meal", "sku": sku, "quantity": 1, "price": items_total}
            order = build_order(
                [item],
                delivery_fee=delivery_fee,
                tip_amount=tip,
                payment_type=payment_type,
                payment_method=payment_method,
                customer_name="Wanjiku",
                customer_phone="254722000111",
                delivery_address="Ngong Road",
            )
            if driver_id is not None:
                order.driver_id = int(driver_id)
            db.session.commit()
            return int(order.id)

    def advance(self, order_id: int, *statuses: str, actor: Actor = ADMIN):
        outcome = None
        with self.app.app_context():
            for status in statuses:
                outcome = advance_status(order_id, status, actor=actor)
        return outcome

    # -- inspection ------------------------------------------------------

    def order_dict(self, order_id: int) -> dict:
        with self.app.app_context():
            return db.session.get(Order, int(order_id)).to_dict()

    def merchant_wallet(self) -> dict:
        with self.app.app_context():
            wallet = get_admin_wallet()
            db.session.commit()
            return wallet.to_dict()

    def driver_wallet(self, driver_id: int) -> dict:
        with self.app.app_context():
            wallet = get_driver_wallet(int(driver_id))
            db.session.commit()
            return wallet.to_dict()

    def entries(self, order_id: int | None = None, **filters) -> list[dict]:
        with self.app.app_context():
            q = Transaction.query
            if order_id is not None:
                q = q.filter(Transaction.order_id == int(order_id))
            if filters:
                q = q.filter_by(**filters)
            return [t.to_dict() for t in q.order_by(Transaction.id.asc()).all()]

    # -- http ------------------------------------------------------------

    @staticmethod
    def auth(role: str, actor_id: int) -> dict:
        return {"Authorization": f"Bearer {create_token(actor_id, role)}"}


def stk_callback(checkout_id: str, *, code: int = 0, amount=None, receipt: str = "QGR7XYZ123") -> dict:
    callback = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_id,
        "ResultCode": code,
        "ResultDesc": "The service request is processed successfully." if code == 0 else "Request cancelled by user",
    }
    if code == 0:
        items = [
            {"Name": "MpesaReceiptNumber", "Value": receipt},
            {"Name": "TransactionDate", "Value": 20261019143015},
            {"Name": "PhoneNumber", "Value": 254722000111},
        ]
        if amount is not None:
            items.insert(0, {"Name": "Amount", "Value": amount})
        callback["CallbackMetadata"] = {"Item": items}
    return {"Body": {"stkCallback": callback}}


def b2c_result(conversation_id: str, *, code: int = 0, receipt: str = "RBX4HG7T2K") -> dict:
    result = {
        "ResultType": 0,
        "ResultCode": code,
        "ResultDesc": "The service request is processed successfully." if code == 0 else "The initiator information is invalid.",
        "OriginatorConversationID": "10571-7910404-1",
        "ConversationID": conversation_id,
        "TransactionID": receipt,
    }
    if code == 0:
        result["ResultParameters"] = {
            "ResultParameter": [
                {"Key": "TransactionAmount", "Value": 150},
                {"Key": "TransactionReceipt", "Value": receipt},
            ]
        }
    return {"Result": result}
