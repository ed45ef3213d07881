from __future__ import annotations

import base64
import os
import unittest
from unittest.mock import MagicMock, patch

import requests

from orderflow.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from orderflow.integrations.payments import mpesa_provider
from orderflow.integrations.payments.factory import build_payments_provider, payment_health
from orderflow.integrations.payments.mock_provider import MockPaymentsProvider
from orderflow.integrations.payments.mpesa_provider import (
    PRODUCTION_BASE_URL,
    SANDBOX_BASE_URL,
    MpesaPaymentsProvider,
    base_url_for,
)
from orderflow.services.errors import GatewayUnavailable


def _response(status_code: int, body: dict | None):
    res = MagicMock()
    res.status_code = status_code
    res.content = b"{}" if body is not None else b""
    res.json.return_value = body if body is not None else {}
    return res


MPESA_ENV = {
    "PAYMENTS_PROVIDER": "mpesa",
    "MPESA_CONSUMER_KEY": "ck",
    "MPESA_CONSUMER_SECRET": "cs",
    "MPESA_SHORTCODE": "174379",
    "MPESA_PASSKEY": "passkey",
    "MPESA_CALLBACK_URL": "https://example.test/api/mpesa/callback",
    "MPESA_ENVIRONMENT": "sandbox",
}


class MpesaProviderTestCase(unittest.TestCase):
    def setUp(self):
        mpesa_provider._TOKEN_CACHE.clear()
        self.provider = MpesaPaymentsProvider(
            consumer_key="ck",
            consumer_secret="cs",
            shortcode="174379",
            passkey="passkey",
            callback_url="https://example.test/api/mpesa/callback",
            b2c_callback_url="https://example.test/api/mpesa/b2c-callback",
            initiator_name="apiop",
            security_credential="secret",
        )
        get_patch = patch.object(
            mpesa_provider.requests, "get", return_value=_response(200, {"access_token": "tok", "expires_in": "3599"})
        )
        self.get = get_patch.start()
        self.addCleanup(get_patch.stop)

    def test_stk_push_accepted_is_pending(self):
        accepted = {
            "MerchantRequestID": "29115-34620561-1",
            "CheckoutRequestID": "ws_CO_191220191020363925",
            "ResponseCode": "0",
            "CustomerMessage": "Success. Request accepted for processing",
        }
        with patch.object(mpesa_provider.requests, "post", return_value=_response(200, accepted)) as post:
            result = self.provider.initiate_push(
                phone="254722000111", amount="1250.40", order_ref="ORDER12", description="Order 12"
            )
        self.assertEqual(result.status, "pending")
        self.assertEqual(result.checkout_request_id, "ws_CO_191220191020363925")
        sent = post.call_args.kwargs["json"]
        self.assertEqual(sent["Amount"], 1251)
        self.assertEqual(sent["TransactionType"], "CustomerPayBillOnline")
        decoded = base64.b64decode(sent["Password"]).decode()
        self.assertEqual(decoded, f"174379passkey{sent['Timestamp']}")
        self.assertEqual(post.call_args.kwargs["headers"]["Authorization"], "Bearer tok")
        self.assertTrue(post.call_args.args[0].startswith(SANDBOX_BASE_URL))

    def test_access_token_is_cached(self):
        ok = _response(200, {"ResponseCode": "0", "CheckoutRequestID": "ws_CO_1"})
        with patch.object(mpesa_provider.requests, "post", return_value=ok):
            self.provider.initiate_push(phone="254722000111", amount=10, order_ref="A", description="A")
            self.provider.initiate_push(phone="254722000111", amount=10, order_ref="B", description="B")
        self.assertEqual(self.get.call_count, 1)

    def test_stk_push_rejected_codes_fail(self):
        rejected = {"ResponseCode": "1", "ResponseDescription": "Rejected"}
        with patch.object(mpesa_provider.requests, "post", return_value=_response(200, rejected)):
            result = self.provider.initiate_push(phone="254722000111", amount=10, order_ref="A", description="A")
        self.assertEqual(result.status, "failed")
        self.assertEqual(result.response_code, "1")

        invalid = {"requestId": "1", "errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid Amount"}
        with patch.object(mpesa_provider.requests, "post", return_value=_response(400, invalid)):
            result = self.provider.initiate_push(phone="254722000111", amount=0, order_ref="A", description="A")
        self.assertEqual(result.status, "failed")
        self.assertEqual(result.message, "Bad Request - Invalid Amount")

    def test_gateway_outages_raise(self):
        with patch.object(mpesa_provider.requests, "post", return_value=_response(503, None)):
            with self.assertRaises(GatewayUnavailable):
                self.provider.initiate_push(phone="254722000111", amount=10, order_ref="A", description="A")
        with patch.object(mpesa_provider.requests, "post", side_effect=requests.ConnectionError("reset")):
            with self.assertRaises(GatewayUnavailable):
                self.provider.send_payout(phone="254722000111", amount=10, reference="WD1", remarks="x")
        self.get.return_value = _response(401, {"errorMessage": "Invalid credentials"})
        mpesa_provider._TOKEN_CACHE.clear()
        with self.assertRaises(GatewayUnavailable):
            self.provider.query_push("ws_CO_1")

    def test_query_push_codes(self):
        processing = {"requestId": "1", "errorCode": "500.001.1001", "errorMessage": "The transaction is being processed"}
        with patch.object(mpesa_provider.requests, "post", return_value=_response(500, processing)):
            self.assertIsNone(self.provider.query_push("ws_CO_1").result_code)
        cancelled = {"ResponseCode": "0", "ResultCode": "1032", "ResultDesc": "Request cancelled by user"}
        with patch.object(mpesa_provider.requests, "post", return_value=_response(200, cancelled)):
            result = self.provider.query_push("ws_CO_1")
        self.assertEqual(result.result_code, 1032)
        self.assertEqual(result.result_desc, "Request cancelled by user")

    def test_b2c_payout_accepted(self):
        accepted = {
            "ConversationID": "AG_20261019_00004e48cf7e3533f581",
            "OriginatorConversationID": "10571-7910404-1",
            "ResponseCode": "0",
            "ResponseDescription": "Accept the service request successfully.",
        }
        with patch.object(mpesa_provider.requests, "post", return_value=_response(200, accepted)) as post:
            result = self.provider.send_payout(phone="254711000001", amount="150.75", reference="WD4", remarks="payout")
        self.assertTrue(result.accepted)
        self.assertEqual(result.conversation_id, "AG_20261019_00004e48cf7e3533f581")
        sent = post.call_args.kwargs["json"]
        self.assertEqual(sent["Amount"], 150)
        self.assertEqual(sent["CommandID"], "BusinessPayment")
        self.assertEqual(sent["InitiatorName"], "apiop")

    def test_base_url_selection(self):
        self.assertEqual(base_url_for("production"), PRODUCTION_BASE_URL)
        self.assertEqual(base_url_for("sandbox"), SANDBOX_BASE_URL)
        self.assertEqual(base_url_for(""), SANDBOX_BASE_URL)


class PaymentsFactoryTestCase(unittest.TestCase):
    def test_mock_is_the_default(self):
        with patch.dict(os.environ, {"PAYMENTS_PROVIDER": ""}):
            self.assertIsInstance(build_payments_provider(), MockPaymentsProvider)

    def test_disabled_and_unknown_providers(self):
        with patch.dict(os.environ, {"PAYMENTS_PROVIDER": "disabled"}):
            with self.assertRaises(IntegrationDisabledError):
                build_payments_provider()
            self.assertEqual(payment_health()["status"], "disabled")
        with patch.dict(os.environ, {"PAYMENTS_PROVIDER": "paypal"}):
            with self.assertRaises(IntegrationMisconfiguredError):
                build_payments_provider()

    def test_mpesa_requires_credentials(self):
        with patch.dict(os.environ, {**MPESA_ENV, "MPESA_PASSKEY": ""}):
            with self.assertRaises(IntegrationMisconfiguredError) as ctx:
                build_payments_provider()
            self.assertIn("MPESA_PASSKEY", str(ctx.exception))
            health = payment_health()
            self.assertEqual(health["status"], "misconfigured")
            self.assertIn("MPESA_PASSKEY", health["missing"])

    def test_mpesa_built_from_environment(self):
        with patch.dict(os.environ, MPESA_ENV):
            provider = build_payments_provider()
        self.assertIsInstance(provider, MpesaPaymentsProvider)
        self.assertEqual(provider.shortcode, "174379")
        self.assertEqual(provider.base_url, SANDBOX_BASE_URL)


if __name__ == "__main__":
    unittest.main()
