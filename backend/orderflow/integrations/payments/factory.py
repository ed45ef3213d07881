from __future__ import annotations

import os

from orderflow.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from orderflow.integrations.payments.base import PaymentsProvider
from orderflow.integrations.payments.mock_provider import MockPaymentsProvider
from orderflow.integrations.payments.mpesa_provider import MpesaPaymentsProvider

_MPESA_REQUIRED = (
    "MPESA_CONSUMER_KEY",
    "MPESA_CONSUMER_SECRET",
    "MPESA_SHORTCODE",
    "MPESA_PASSKEY",
    "MPESA_CALLBACK_URL",
)
_MPESA_PAYOUT_REQUIRED = (
    "MPESA_B2C_CALLBACK_URL",
    "MPESA_INITIATOR_NAME",
    "MPESA_SECURITY_CREDENTIAL",
)


def _env(name: str) -> str:
    return (os.getenv(name) or "").strip()


def payments_provider_name() -> str:
    return (_env("PAYMENTS_PROVIDER") or "mock").lower()


def _timeout() -> float:
    try:
        return max(1.0, float(_env("MPESA_HTTP_TIMEOUT_SECONDS") or 25))
    except ValueError:
        return 25.0


def build_payments_provider() -> PaymentsProvider:
    provider = payments_provider_name()
    if provider == "disabled":
        raise IntegrationDisabledError("INTEGRATION_DISABLED:payments")
    if provider == "mock":
        return MockPaymentsProvider()
    if provider != "mpesa":
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:payments_provider={provider}")

    missing = [k for k in _MPESA_REQUIRED if not _env(k)]
    if missing:
        raise IntegrationMisconfiguredError(f"INTEGRATION_MISCONFIGURED:missing {','.join(missing)}")
    return MpesaPaymentsProvider(
        consumer_key=_env("MPESA_CONSUMER_KEY"),
        consumer_secret=_env("MPESA_CONSUMER_SECRET"),
        shortcode=_env("MPESA_SHORTCODE"),
        passkey=_env("MPESA_PASSKEY"),
        environment=_env("MPESA_ENVIRONMENT") or "sandbox",
        callback_url=_env("MPESA_CALLBACK_URL"),
        b2c_callback_url=_env("MPESA_B2C_CALLBACK_URL"),
        initiator_name=_env("MPESA_INITIATOR_NAME"),
        security_credential=_env("MPESA_SECURITY_CREDENTIAL"),
        timeout=_timeout(),
    )


def payment_health() -> dict:
    provider = payments_provider_name()
    missing: list[str] = []
    if provider == "mpesa":
        missing = [k for k in _MPESA_REQUIRED + _MPESA_PAYOUT_REQUIRED if not _env(k)]
    if provider == "disabled":
        status = "disabled"
    elif provider not in ("mock", "mpesa"):
        status = "misconfigured"
    elif missing:
        status = "misconfigured"
    else:
        status = "configured"
    return {
        "status": status,
        "provider": provider,
        "environment": (_env("MPESA_ENVIRONMENT") or "sandbox") if provider == "mpesa" else "",
        "missing": missing,
    }
