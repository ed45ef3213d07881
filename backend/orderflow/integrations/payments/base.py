from __future__ import annotations

from dataclasses import dataclass


@dataclass
class PushResult:
    """Outcome of asking the gateway to push a payment prompt to a phone.

    ``status`` is ``pending`` unless the gateway answered with a definitive
    rejection code, in which case it is ``failed``.
    """

    status: str
    checkout_request_id: str = ""
    merchant_request_id: str = ""
    response_code: str = ""
    message: str = ""
    raw: dict | None = None


@dataclass
class PushQueryResult:
    # None while the customer has not answered the prompt yet.
    result_code: int | None
    result_desc: str = ""
    raw: dict | None = None


@dataclass
class PayoutResult:
    accepted: bool
    conversation_id: str = ""
    originator_conversation_id: str = ""
    message: str = ""
    raw: dict | None = None


class PaymentsProvider:
    name = "unknown"

    def initiate_push(self, *, phone: str, amount, order_ref: str, description: str) -> PushResult:
        raise NotImplementedError

    def query_push(self, checkout_request_id: str) -> PushQueryResult:
        raise NotImplementedError

    def send_payout(self, *, phone: str, amount, reference: str, remarks: str) -> PayoutResult:
        raise NotImplementedError
