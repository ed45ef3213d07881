from __future__ import annotations

import uuid

from orderflow.integrations.payments.base import PaymentsProvider, PayoutResult, PushQueryResult, PushResult


class MockPaymentsProvider(PaymentsProvider):
    """Gateway stand-in for dev and tests: accepts every request, never calls out."""

    name = "mock"

    def initiate_push(self, *, phone: str, amount, order_ref: str, description: str) -> PushResult:
        token = uuid.uuid4().hex[:12]
        return PushResult(
            status="pending",
            checkout_request_id=f"ws_CO_mock_{token}",
            merchant_request_id=f"mock-{token}",
            response_code="0",
            message="Success. Request accepted for processing",
            raw={"phone": phone, "amount": str(amount), "order_ref": order_ref, "description": description},
        )

    def query_push(self, checkout_request_id: str) -> PushQueryResult:
        return PushQueryResult(result_code=None, result_desc="pending", raw={"checkout_request_id": checkout_request_id})

    def send_payout(self, *, phone: str, amount, reference: str, remarks: str) -> PayoutResult:
        token = uuid.uuid4().hex[:12]
        return PayoutResult(
            accepted=True,
            conversation_id=f"AG_mock_{token}",
            originator_conversation_id=f"mock-{token}",
            message="Accept the service request successfully.",
            raw={"phone": phone, "amount": str(amount), "reference": reference, "remarks": remarks},
        )
