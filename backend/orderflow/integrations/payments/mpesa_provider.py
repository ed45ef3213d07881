from __future__ import annotations

import base64
import math
import threading
import time
from datetime import datetime

import requests

from orderflow.integrations.payments.base import PaymentsProvider, PayoutResult, PushQueryResult, PushResult
from orderflow.services.errors import GatewayUnavailable

SANDBOX_BASE_URL = "https://sandbox.safaricom.co.ke"
PRODUCTION_BASE_URL = "https://api.safaricom.co.ke"

_TOKEN_LOCK = threading.Lock()
_TOKEN_CACHE: dict[str, tuple[str, float]] = {}


def base_url_for(environment: str) -> str:
    return PRODUCTION_BASE_URL if (environment or "").strip().lower() == "production" else SANDBOX_BASE_URL


class MpesaPaymentsProvider(PaymentsProvider):
    """Safaricom Daraja client: STK push, STK query and B2C payouts."""

    name = "mpesa"

    def __init__(
        self,
        *,
        consumer_key: str,
        consumer_secret: str,
        shortcode: str,
        passkey: str,
        environment: str = "sandbox",
        callback_url: str = "",
        b2c_callback_url: str = "",
        initiator_name: str = "",
        security_credential: str = "",
        timeout: float = 25,
    ):
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.shortcode = shortcode
        self.passkey = passkey
        self.base_url = base_url_for(environment)
        self.callback_url = callback_url
        self.b2c_callback_url = b2c_callback_url
        self.initiator_name = initiator_name
        self.security_credential = security_credential
        self.timeout = timeout

    def _access_token(self) -> str:
        cache_key = f"{self.base_url}|{self.consumer_key}"
        with _TOKEN_LOCK:
            cached = _TOKEN_CACHE.get(cache_key)
            if cached and cached[1] > time.time():
                return cached[0]
        try:
            r = requests.get(
                f"{self.base_url}/oauth/v1/generate",
                params={"grant_type": "client_credentials"},
                auth=(self.consumer_key, self.consumer_secret),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise GatewayUnavailable(f"MPESA_AUTH_UNREACHABLE:{e}") from e
        j = r.json() if r.content else {}
        token = (j.get("access_token") or "").strip() if isinstance(j, dict) else ""
        if r.status_code != 200 or not token:
            raise GatewayUnavailable(f"MPESA_AUTH_FAILED:HTTP {r.status_code}")
        try:
            expires_in = int(j.get("expires_in") or 3599)
        except (TypeError, ValueError):
            expires_in = 3599
        with _TOKEN_LOCK:
            # Refresh a minute early so a token never expires mid-request.
            _TOKEN_CACHE[cache_key] = (token, time.time() + max(60, expires_in - 60))
        return token

    def _post(self, path: str, payload: dict) -> tuple[int, dict]:
        headers = {
            "Authorization": f"Bearer {self._access_token()}",
            "Content-Type": "application/json",
        }
        try:
            r = requests.post(f"{self.base_url}{path}", headers=headers, json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise GatewayUnavailable(f"MPESA_UNREACHABLE:{e}") from e
        try:
            j = r.json() if r.content else {}
        except ValueError:
            j = {}
        if r.status_code in (401, 403):
            raise GatewayUnavailable(f"MPESA_AUTH_REJECTED:HTTP {r.status_code}")
        if r.status_code >= 500 and not (isinstance(j, dict) and j.get("errorCode")):
            raise GatewayUnavailable(f"MPESA_SERVER_ERROR:HTTP {r.status_code}")
        return r.status_code, j if isinstance(j, dict) else {"payload": j}

    def _password(self, timestamp: str) -> str:
        raw = f"{self.shortcode}{self.passkey}{timestamp}".encode("utf-8")
        return base64.b64encode(raw).decode("ascii")

    def initiate_push(self, *, phone: str, amount, order_ref: str, description: str) -> PushResult:
        timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
        payload = {
            "BusinessShortCode": self.shortcode,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(math.ceil(float(amount))),
            "PartyA": phone,
            "PartyB": self.shortcode,
            "PhoneNumber": phone,
            "CallBackURL": self.callback_url,
            "AccountReference": (order_ref or "")[:12],
            "TransactionDesc": (description or "Payment")[:13],
        }
        status_code, j = self._post("/mpesa/stkpush/v1/processrequest", payload)
        response_code = str(j.get("ResponseCode") if j.get("ResponseCode") is not None else "").strip()
        message = str(j.get("CustomerMessage") or j.get("ResponseDescription") or j.get("errorMessage") or "").strip()
        checkout_id = str(j.get("CheckoutRequestID") or "").strip()
        merchant_id = str(j.get("MerchantRequestID") or "").strip()
        if response_code and response_code != "0":
            return PushResult(status="failed", response_code=response_code, message=message, raw=j)
        if j.get("errorCode") and not checkout_id:
            return PushResult(status="failed", response_code=str(j.get("errorCode")), message=message, raw=j)
        if status_code >= 400 and not checkout_id:
            return PushResult(status="failed", response_code=f"HTTP{status_code}", message=message, raw=j)
        return PushResult(
            status="pending",
            checkout_request_id=checkout_id,
            merchant_request_id=merchant_id,
            response_code=response_code,
            message=message,
            raw=j,
        )

    def query_push(self, checkout_request_id: str) -> PushQueryResult:
        timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
        payload = {
            "BusinessShortCode": self.shortcode,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        _status_code, j = self._post("/mpesa/stkpushquery/v1/query", payload)
        raw_code = j.get("ResultCode")
        if raw_code is None or str(raw_code).strip() == "":
            # Daraja answers "transaction is being processed" with an errorCode and no ResultCode.
            return PushQueryResult(result_code=None, result_desc=str(j.get("errorMessage") or ""), raw=j)
        try:
            code = int(str(raw_code).strip())
        except ValueError:
            return PushQueryResult(result_code=None, result_desc=str(raw_code), raw=j)
        return PushQueryResult(result_code=code, result_desc=str(j.get("ResultDesc") or ""), raw=j)

    def send_payout(self, *, phone: str, amount, reference: str, remarks: str) -> PayoutResult:
        payload = {
            "InitiatorName": self.initiator_name,
            "SecurityCredential": self.security_credential,
            "CommandID": "BusinessPayment",
            "Amount": int(math.floor(float(amount))),
            "PartyA": self.shortcode,
            "PartyB": phone,
            "Remarks": (remarks or "Driver withdrawal")[:100],
            "QueueTimeOutURL": self.b2c_callback_url,
            "ResultURL": self.b2c_callback_url,
            "Occasion": (reference or "")[:100],
        }
        _status_code, j = self._post("/mpesa/b2c/v1/paymentrequest", payload)
        accepted = str(j.get("ResponseCode") or "").strip() == "0"
        return PayoutResult(
            accepted=accepted,
            conversation_id=str(j.get("ConversationID") or "").strip(),
            originator_conversation_id=str(j.get("OriginatorConversationID") or "").strip(),
            message=str(j.get("ResponseDescription") or j.get("errorMessage") or "").strip(),
            raw=j,
        )
