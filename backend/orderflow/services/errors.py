from __future__ import annotations


class OrderFlowError(RuntimeError):
    code = "ORDERFLOW_ERROR"
    http_status = 400

    def __init__(self, message: str = "", *, order_id: int | None = None):
        super().__init__(message or self.code.lower())
        self.order_id = order_id

    def to_dict(self) -> dict:
        payload = {"ok": False, "error": self.code, "message": str(self), "status": int(self.http_status)}
        if self.order_id is not None:
            payload["order_id"] = int(self.order_id)
        return payload


class InvalidTransition(OrderFlowError):
    code = "INVALID_TRANSITION"

    def __init__(self, current: str, requested: str, *, order_id: int | None = None, reason: str = ""):
        message = f"invalid_order_transition {current}->{requested}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, order_id=order_id)
        self.current = current
        self.requested = requested

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["current_status"] = self.current
        payload["requested_status"] = self.requested
        return payload


class PaymentNotConfirmed(OrderFlowError):
    code = "PAYMENT_NOT_CONFIRMED"


class Unauthorized(OrderFlowError):
    code = "UNAUTHORIZED"
    http_status = 403


class OrderNotFound(OrderFlowError):
    code = "ORDER_NOT_FOUND"
    http_status = 404


class SettlementConflict(OrderFlowError):
    code = "SETTLEMENT_CONFLICT"
    http_status = 409


class InvalidRequest(OrderFlowError):
    code = "INVALID_REQUEST"


class InsufficientBalance(OrderFlowError):
    code = "INSUFFICIENT_BALANCE"


class GatewayUnavailable(OrderFlowError):
    code = "GATEWAY_UNAVAILABLE"
    http_status = 502
