"""One confirmation routine for every way an order can get paid.

Gateway push callbacks, manual (cash / relayed M-Pesa) confirmations and
point-of-sale checkouts all end up in ``apply_confirmation`` under the order
lock, so whichever arrives second finds the order paid and does nothing.
"""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from flask import current_app
from sqlalchemy.exc import IntegrityError

from orderflow.extensions import db
from orderflow.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from orderflow.integrations.payments.factory import build_payments_provider
from orderflow.models import Order, Transaction, WebhookEvent
from orderflow.services import side_effects
from orderflow.services.actors import CUSTOMER, SYSTEM, Actor
from orderflow.services.errors import (
    GatewayUnavailable,
    InvalidRequest,
    InvalidTransition,
    OrderFlowError,
    SettlementConflict,
    Unauthorized,
)
from orderflow.services.ledger_service import TxnStatus, TxnType, find_entry, upsert_entry
from orderflow.services.order_financials import get_or_create_breakdown, get_or_create_split
from orderflow.services.order_locks import load_order_for_update, order_lock
from orderflow.services.order_state_machine import OrderStatus, TransitionOutcome, apply_transition, run_after_commit
from orderflow.services.settlement_service import IN_HAND_PROVIDERS
from orderflow.services.wallet_service import credit, get_driver_wallet
from orderflow.utils.events import log_event
from orderflow.utils.money import is_dust, non_negative, to_money
from orderflow.utils.observability import get_request_id
from orderflow.utils.phone import normalize_msisdn

MPESA_DATE_FORMAT = "%Y%m%d%H%M%S"

# Status the order moves to once its payment is confirmed.
_NEXT_ON_PAYMENT = {
    OrderStatus.OUT_FOR_DELIVERY: OrderStatus.DELIVERED,
    OrderStatus.DELIVERED: OrderStatus.COMPLETED,
    OrderStatus.POS_ORDER: OrderStatus.COMPLETED,
    OrderStatus.PENDING: OrderStatus.CONFIRMED,
}


@dataclass
class PaymentConfirmation:
    order_id: int
    source: str  # gateway | manual | pos
    payment_method: str
    payment_provider: str
    receipt_number: str | None = None
    amount: Decimal | None = None
    phone_number: str | None = None
    transaction_date: datetime | None = None
    checkout_request_id: str | None = None
    merchant_request_id: str | None = None


@dataclass
class ConfirmationOutcome:
    order: Order
    already_paid: bool = False
    transition: TransitionOutcome | None = None
    cash_settlement: Transaction | None = None

    def to_dict(self) -> dict:
        settlement = self.transition.settlement if self.transition else None
        return {
            "order": self.order.to_dict(),
            "status": self.order.status,
            "payment_status": self.order.payment_status,
            "already_paid": bool(self.already_paid),
            "steps": list(self.transition.steps) if self.transition else [],
            "settlement": settlement.to_dict() if settlement else None,
            "cash_settlement": self.cash_settlement.to_dict() if self.cash_settlement else None,
        }


def _record_cash_settlement(order: Order, driver_share: Decimal, *, provider: str) -> Transaction | None:
    """Debit what a driver owes the merchant after collecting the order total in hand."""
    if order.driver_id is None:
        return None
    owed = non_negative(to_money(order.total_amount) - non_negative(order.tip_amount) - driver_share)
    if is_dust(owed):
        return None
    if find_entry(int(order.id), TxnType.CASH_SETTLEMENT, driver_id=int(order.driver_id)) is not None:
        return None
    wallet = get_driver_wallet(int(order.driver_id))
    entry, _ = upsert_entry(
        int(order.id),
        TxnType.CASH_SETTLEMENT,
        driver_id=int(order.driver_id),
        driver_wallet_id=int(wallet.id),
        amount=owed,
        status=TxnStatus.COMPLETED,
        payment_status="paid",
        payment_method=order.payment_method or "cash",
        payment_provider=provider,
        transaction_date=datetime.utcnow(),
        note=f"Driver collected KES {to_money(order.total_amount)} in hand for order #{order.id}; owes merchant KES {owed}.",
    )
    credit(wallet, -owed)
    return entry


def _next_status_on_payment(order: Order) -> str | None:
    # A prepaid order paid while still on the road is not delivered yet.
    if order.payment_type == "pay_now" and order.status == OrderStatus.OUT_FOR_DELIVERY:
        return None
    return _NEXT_ON_PAYMENT.get(order.status)


def apply_confirmation(order: Order, confirmation: PaymentConfirmation, *, actor: Actor = SYSTEM) -> ConfirmationOutcome:
    """Mark a locked order paid and drive it forward. Flushes, never commits."""
    if order.status == OrderStatus.CANCELLED:
        raise InvalidTransition(
            order.status,
            _NEXT_ON_PAYMENT.get(order.status, OrderStatus.COMPLETED),
            order_id=int(order.id),
            reason="cannot confirm payment for a cancelled order",
        )
    if order.payment_status == "paid":
        return ConfirmationOutcome(order=order, already_paid=True)

    now = confirmation.transaction_date or datetime.utcnow()
    breakdown = get_or_create_breakdown(order)
    upsert_entry(
        int(order.id),
        TxnType.PAYMENT,
        amount=breakdown.items_total,
        status=TxnStatus.COMPLETED,
        payment_status="paid",
        payment_method=confirmation.payment_method,
        payment_provider=confirmation.payment_provider,
        receipt_number=(confirmation.receipt_number or None),
        checkout_request_id=confirmation.checkout_request_id,
        merchant_request_id=confirmation.merchant_request_id,
        phone_number=confirmation.phone_number,
        transaction_date=now,
        note=f"Payment confirmed via {confirmation.source} ({confirmation.payment_provider}) by {actor.label}.",
    )
    order.payment_status = "paid"
    order.payment_method = confirmation.payment_method or order.payment_method
    order.payment_confirmed_at = datetime.utcnow()
    db.session.add(order)

    cash_entry = None
    if not order.is_pos:
        split = get_or_create_split(order, breakdown)
        upsert_entry(
            int(order.id),
            TxnType.DELIVERY_PAY,
            amount=split.merchant_share,
            create=not is_dust(split.merchant_share),
            status=TxnStatus.COMPLETED,
            payment_status="paid",
            payment_method=confirmation.payment_method,
            transaction_date=now,
            note=f"Merchant share of delivery fee for order #{order.id}.",
        )
        if confirmation.payment_provider in IN_HAND_PROVIDERS:
            cash_entry = _record_cash_settlement(order, split.driver_share, provider=confirmation.payment_provider)

    transition = None
    target = _next_status_on_payment(order)
    if target is not None:
        transition = apply_transition(
            order,
            target,
            actor=SYSTEM,
            idempotency_key=f"payment:{order.id}:{order.status}->{target}",
            reason=f"payment confirmed via {confirmation.source} by {actor.label}",
        )
    db.session.flush()
    return ConfirmationOutcome(order=order, transition=transition, cash_settlement=cash_entry)


def after_confirmation(outcome: ConfirmationOutcome, confirmation: PaymentConfirmation, *, actor: Actor) -> None:
    if outcome.already_paid:
        return
    order = outcome.order
    log_event(
        "payment_confirmed",
        actor=actor,
        order_id=int(order.id),
        subject_type="order",
        subject_id=int(order.id),
        idempotency_key=f"order:{int(order.id)}:payment_confirmed",
        metadata={
            "source": confirmation.source,
            "provider": confirmation.payment_provider,
            "receipt": confirmation.receipt_number or "",
        },
    )
    if outcome.transition is not None:
        run_after_commit(outcome.transition, actor=SYSTEM)
    else:
        side_effects.publish_order_update(order, old_status=order.status, event="payment-confirmed")


def confirm_payment(confirmation: PaymentConfirmation, *, actor: Actor = SYSTEM, guard=None) -> ConfirmationOutcome:
    """Confirm payment in its own unit of work.

    ``guard(order)`` runs on the locked row before anything changes and may
    raise to refuse the confirmation.
    """
    order_id = int(confirmation.order_id)
    try:
        with order_lock(order_id):
            order = load_order_for_update(order_id)
            if guard is not None:
                guard(order)
            outcome = apply_confirmation(order, confirmation, actor=actor)
            db.session.commit()
    except OrderFlowError as e:
        db.session.rollback()
        current_app.logger.warning(
            "payment_confirmation_rejected order_id=%s source=%s actor=%s error=%s msg=%s",
            order_id,
            confirmation.source,
            actor.label,
            e.code,
            e,
        )
        raise
    except Exception:
        db.session.rollback()
        current_app.logger.exception("payment_confirmation_failed order_id=%s source=%s", order_id, confirmation.source)
        raise
    current_app.logger.info(
        "payment_confirmed order_id=%s source=%s provider=%s already_paid=%s status=%s",
        order_id,
        confirmation.source,
        confirmation.payment_provider,
        outcome.already_paid,
        outcome.order.status,
    )
    after_confirmation(outcome, confirmation, actor=actor)
    return outcome


def _require_order_access(order: Order, actor: Actor) -> None:
    if actor.is_admin:
        return
    if actor.is_pos and order.is_pos:
        return
    if actor.is_driver and order.driver_id is not None and actor.id is not None and int(order.driver_id) == int(actor.id):
        return
    raise Unauthorized(f"{actor.label} cannot take payment for order {order.id}", order_id=int(order.id))


def manual_method(method: str | None) -> tuple[str, str]:
    if (method or "").strip().lower() == "mpesa_manual":
        return "mobile_money", "driver_mpesa_manual"
    return "cash", "cash_in_hand"


def confirm_manual_payment(order_id: int, *, actor: Actor, method: str | None = None, receipt: str | None = None) -> ConfirmationOutcome:
    payment_method, provider = manual_method(method)

    def guard(order: Order) -> None:
        _require_order_access(order, actor)
        if order.payment_type != "pay_on_delivery":
            raise InvalidRequest("manual confirmation is only for pay-on-delivery orders", order_id=int(order.id))

    confirmation = PaymentConfirmation(
        order_id=int(order_id),
        source="manual",
        payment_method=payment_method,
        payment_provider=provider,
        receipt_number=((receipt or "").strip() or "CASH")[:64],
    )
    return confirm_payment(confirmation, actor=actor, guard=guard)


_CUSTOMER_PAYABLE = (
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PREPARING,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED,
)


def _check_customer_push_allowed(order: Order) -> None:
    if order.is_pos or order.payment_type != "pay_now":
        raise InvalidRequest("checkout payment is only for pay-now orders", order_id=int(order.id))
    if order.status not in _CUSTOMER_PAYABLE:
        raise InvalidRequest(f"order {order.id} is {order.status} and can no longer be paid", order_id=int(order.id))


def _check_push_allowed(order: Order, actor: Actor) -> None:
    if order.payment_status == "paid":
        raise InvalidRequest(f"order {order.id} is already paid", order_id=int(order.id))
    if actor.type == CUSTOMER.type:
        _check_customer_push_allowed(order)
        return
    _require_order_access(order, actor)
    if order.is_pos:
        if order.status != OrderStatus.POS_ORDER:
            raise InvalidRequest(f"order {order.id} is not awaiting point-of-sale payment", order_id=int(order.id))
        return
    if order.payment_type != "pay_on_delivery":
        raise InvalidRequest("push payment is only for pay-on-delivery orders", order_id=int(order.id))
    if order.status != OrderStatus.OUT_FOR_DELIVERY:
        raise InvalidRequest(f"order {order.id} must be out_for_delivery to request payment", order_id=int(order.id))


def initiate_push_payment(order_id: int, *, actor: Actor, phone: str | None, expected_amount=None) -> dict:
    """Send an STK push for the order total and record the pending payment entry.

    ``expected_amount`` is the total the caller showed the customer; it must
    match the order total to the cent.
    """
    msisdn = normalize_msisdn(phone)
    if not msisdn:
        raise InvalidRequest("phone must be a valid Kenyan mobile number", order_id=int(order_id))

    # The gateway call happens outside the order lock so a fast callback is never blocked behind it.
    with order_lock(order_id):
        order = load_order_for_update(order_id)
        _check_push_allowed(order, actor)
        amount = to_money(order.total_amount)
        db.session.rollback()
    if expected_amount is not None:
        quoted = to_money(expected_amount)
        if abs(quoted - amount) > Decimal("0.01"):
            raise InvalidRequest(f"amount mismatch: expected KES {amount}, got KES {quoted}", order_id=int(order_id))

    try:
        provider = build_payments_provider()
    except (IntegrationDisabledError, IntegrationMisconfiguredError) as e:
        raise GatewayUnavailable(str(e), order_id=int(order_id)) from e
    result = provider.initiate_push(
        phone=msisdn,
        amount=amount,
        order_ref=f"ORDER{int(order_id)}",
        description=f"Order {int(order_id)}",
    )
    current_app.logger.info(
        "push_payment_initiated order_id=%s status=%s checkout=%s code=%s",
        order_id,
        result.status,
        result.checkout_request_id,
        result.response_code,
    )
    if result.status != "pending":
        return {
            "ok": True,
            "status": "failed",
            "order_id": int(order_id),
            "message": result.message or "payment request was rejected",
            "response_code": result.response_code,
        }

    try:
        with order_lock(order_id):
            order = load_order_for_update(order_id)
            payment = find_entry(int(order.id), TxnType.PAYMENT)
            if order.payment_status == "paid" or (payment is not None and payment.status == TxnStatus.COMPLETED):
                db.session.rollback()
                return {"ok": True, "status": "paid", "order_id": int(order_id), "already_paid": True}
            breakdown = get_or_create_breakdown(order)
            entry, _ = upsert_entry(
                int(order.id),
                TxnType.PAYMENT,
                amount=breakdown.items_total,
                status=TxnStatus.PENDING,
                payment_status="pending",
                payment_method="mobile_money",
                payment_provider="mpesa",
                checkout_request_id=result.checkout_request_id,
                merchant_request_id=result.merchant_request_id,
                phone_number=msisdn,
                note=f"STK push sent to {msisdn} for KES {amount} by {actor.label}.",
            )
            if not order.is_pos:
                split = get_or_create_split(order, breakdown)
                upsert_entry(
                    int(order.id),
                    TxnType.DELIVERY_PAY,
                    amount=split.merchant_share,
                    create=not is_dust(split.merchant_share),
                    status=TxnStatus.PENDING,
                    payment_status="pending",
                    payment_method="mobile_money",
                    note=f"Merchant share of delivery fee for order #{order.id}, awaiting payment.",
                )
            order.payment_method = "mobile_money"
            db.session.add(order)
            db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("push_payment_record_failed order_id=%s checkout=%s", order_id, result.checkout_request_id)
        raise

    side_effects.publish_order_update(order, old_status=order.status, event="payment-initiated")
    return {
        "ok": True,
        "status": "pending",
        "order_id": int(order_id),
        "transaction_id": int(entry.id),
        "checkout_request_id": result.checkout_request_id,
        "message": result.message or "Payment request sent to customer phone.",
    }


def claim_webhook_event(kind: str, event_id: str, *, reference: str | None, payload: dict) -> WebhookEvent | None:
    """Record an inbound gateway event; None when the same event was already processed."""
    event_id = (event_id or "")[:160]
    row = WebhookEvent.query.filter_by(provider="mpesa", event_id=event_id).first()
    if row is not None:
        if row.status == "processed":
            return None
        row.status = "received"
        row.error = None
    else:
        row = WebhookEvent(
            provider="mpesa",
            kind=kind,
            event_id=event_id,
            reference=(reference or None),
            status="received",
            request_id=get_request_id() or None,
            payload_json=json.dumps(payload, default=str)[:20000],
            created_at=datetime.utcnow(),
        )
    try:
        db.session.add(row)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return None
    return row


def finish_webhook_event(row: WebhookEvent, status: str, *, error: str | None = None) -> None:
    row.status = status
    row.processed_at = datetime.utcnow()
    row.error = (error or None) and error[:2000]
    db.session.add(row)
    db.session.commit()


def _metadata_items(callback: dict) -> dict:
    meta = callback.get("CallbackMetadata") if isinstance(callback.get("CallbackMetadata"), dict) else {}
    items = meta.get("Item") if isinstance(meta.get("Item"), list) else []
    out = {}
    for item in items:
        if isinstance(item, dict) and item.get("Name"):
            out[str(item["Name"])] = item.get("Value")
    return out


def _parse_mpesa_date(value) -> datetime | None:
    if value in (None, ""):
        return None
    try:
        return datetime.strptime(str(value), MPESA_DATE_FORMAT)
    except ValueError:
        return None


def _result_code(value) -> int | None:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _mark_push_failed(entry_id: int, order_id: int, *, result_code, result_desc: str) -> bool:
    with order_lock(order_id):
        order = load_order_for_update(order_id)
        entry = db.session.get(Transaction, int(entry_id))
        if entry is None or entry.status in (TxnStatus.COMPLETED, TxnStatus.CANCELLED):
            db.session.rollback()
            return False
        entry.status = TxnStatus.FAILED
        entry.payment_status = "failed"
        entry.updated_at = datetime.utcnow()
        entry.append_note(f"Push payment failed ({result_code}): {result_desc or 'no description'}")
        if order.payment_status != "paid":
            order.payment_status = "unpaid"
            db.session.add(order)
        db.session.add(entry)
        db.session.commit()
    side_effects.publish_order_update(order, old_status=order.status, event="payment-failed")
    return True


def apply_push_callback(payload: dict, *, kind: str = "stk") -> dict:
    """Resolve a pending push payment from a gateway callback (or an STK query result)."""
    body = payload.get("Body") if isinstance(payload, dict) else None
    callback = body.get("stkCallback") if isinstance(body, dict) else None
    if not isinstance(callback, dict):
        current_app.logger.warning("mpesa_callback_malformed keys=%s", sorted((payload or {}).keys()) if isinstance(payload, dict) else None)
        return {"ok": False, "error": "MALFORMED_CALLBACK"}

    checkout_id = str(callback.get("CheckoutRequestID") or "").strip()
    result_code = _result_code(callback.get("ResultCode"))
    result_desc = str(callback.get("ResultDesc") or "").strip()
    if not checkout_id or result_code is None:
        current_app.logger.warning("mpesa_callback_incomplete checkout=%s code=%s", checkout_id, callback.get("ResultCode"))
        return {"ok": False, "error": "MALFORMED_CALLBACK"}

    event = claim_webhook_event(kind, f"{checkout_id}:{result_code}", reference=checkout_id, payload=payload)
    if event is None:
        return {"ok": True, "replayed": True, "checkout_request_id": checkout_id}

    entry = (
        Transaction.query.filter_by(checkout_request_id=checkout_id, transaction_type=TxnType.PAYMENT)
        .filter(Transaction.status != TxnStatus.CANCELLED)
        .order_by(Transaction.id.desc())
        .first()
    )
    if entry is None or entry.order_id is None:
        current_app.logger.warning("mpesa_callback_unknown_checkout checkout=%s code=%s", checkout_id, result_code)
        finish_webhook_event(event, "ignored", error="unknown checkout request")
        return {"ok": True, "ignored": True, "checkout_request_id": checkout_id}

    order_id = int(entry.order_id)
    entry_id = int(entry.id)
    try:
        if result_code != 0:
            changed = _mark_push_failed(entry_id, order_id, result_code=result_code, result_desc=result_desc)
            finish_webhook_event(event, "processed")
            current_app.logger.info("mpesa_push_failed order_id=%s checkout=%s code=%s changed=%s", order_id, checkout_id, result_code, changed)
            return {"ok": True, "order_id": order_id, "status": "failed", "result_code": result_code}

        items = _metadata_items(callback)
        amount = to_money(items["Amount"]) if items.get("Amount") is not None else None
        order = db.session.get(Order, order_id)
        if amount is not None and order is not None and amount < Decimal(math.floor(to_money(order.total_amount))):
            _mark_push_failed(entry_id, order_id, result_code="AMOUNT_MISMATCH", result_desc=f"paid {amount}, due {to_money(order.total_amount)}")
            finish_webhook_event(event, "failed", error="amount mismatch")
            current_app.logger.warning("mpesa_amount_mismatch order_id=%s paid=%s due=%s", order_id, amount, order.total_amount)
            return {"ok": False, "order_id": order_id, "error": "AMOUNT_MISMATCH"}

        outcome = confirm_payment(
            PaymentConfirmation(
                order_id=order_id,
                source="gateway",
                payment_method="mobile_money",
                payment_provider="mpesa",
                receipt_number=(str(items.get("MpesaReceiptNumber") or "").strip()[:64] or None),
                amount=amount,
                phone_number=(str(items.get("PhoneNumber") or "").strip() or None),
                transaction_date=_parse_mpesa_date(items.get("TransactionDate")),
                checkout_request_id=checkout_id,
            ),
            actor=SYSTEM,
        )
    except SettlementConflict as e:
        finish_webhook_event(event, "failed", error=str(e))
        raise
    except OrderFlowError as e:
        finish_webhook_event(event, "failed", error=f"{e.code}: {e}")
        return {"ok": False, "order_id": order_id, "error": e.code, "message": str(e)}

    finish_webhook_event(event, "processed")
    return {
        "ok": True,
        "order_id": order_id,
        "status": outcome.order.status,
        "payment_status": outcome.order.payment_status,
        "already_paid": outcome.already_paid,
    }


def poll_pending_pushes(*, min_age_seconds: int = 120, limit: int = 50) -> dict:
    """Ask the gateway about push payments whose callback never arrived."""
    try:
        provider = build_payments_provider()
    except (IntegrationDisabledError, IntegrationMisconfiguredError) as e:
        current_app.logger.info("push_poll_skipped reason=%s", e)
        return {"checked": 0, "resolved": 0, "skipped": str(e)}

    cutoff = datetime.utcnow() - timedelta(seconds=max(0, int(min_age_seconds)))
    rows = (
        Transaction.query.filter_by(transaction_type=TxnType.PAYMENT, status=TxnStatus.PENDING)
        .filter(Transaction.checkout_request_id.isnot(None))
        .filter(Transaction.updated_at <= cutoff)
        .order_by(Transaction.updated_at.asc())
        .limit(int(limit))
        .all()
    )
    checked = 0
    resolved = 0
    for row in rows:
        checkout_id = row.checkout_request_id
        checked += 1
        try:
            result = provider.query_push(checkout_id)
        except GatewayUnavailable as e:
            current_app.logger.warning("push_poll_query_failed checkout=%s err=%s", checkout_id, e)
            continue
        if result.result_code is None:
            continue
        synthetic = {
            "Body": {
                "stkCallback": {
                    "CheckoutRequestID": checkout_id,
                    "MerchantRequestID": row.merchant_request_id or "",
                    "ResultCode": result.result_code,
                    "ResultDesc": result.result_desc,
                }
            }
        }
        try:
            outcome = apply_push_callback(synthetic, kind="stk_query")
        except SettlementConflict as e:
            current_app.logger.warning("push_poll_busy checkout=%s err=%s", checkout_id, e)
            continue
        if outcome.get("ok") and not outcome.get("replayed"):
            resolved += 1
    return {"checked": checked, "resolved": resolved}
