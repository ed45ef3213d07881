from __future__ import annotations

from flask import current_app

from orderflow.extensions import db
from orderflow.services.actors import Actor
from orderflow.services.errors import InvalidRequest, OrderFlowError, Unauthorized
from orderflow.services.order_locks import load_order_for_update, order_lock
from orderflow.services.order_service import build_order, parse_items
from orderflow.services.payment_reconciliation import (
    PaymentConfirmation,
    after_confirmation,
    apply_confirmation,
    initiate_push_payment,
)
from orderflow.utils.phone import normalize_msisdn

POS_METHODS = ("cash", "mobile_money")


def checkout(payload: dict, *, actor: Actor) -> dict:
    """Ring up a counter sale.

    Cash sales are created, paid, completed and settled in one commit. Mobile
    money sales wait in ``pos_order`` for the STK callback to finish them.
    """
    if not (actor.is_pos or actor.is_admin):
        raise Unauthorized(f"{actor.label} cannot use point-of-sale checkout")
    payload = payload or {}
    items = parse_items(payload.get("items"))
    method = (payload.get("payment_method") or "cash").strip().lower()
    if method not in POS_METHODS:
        raise InvalidRequest(f"payment_method must be one of {', '.join(POS_METHODS)}")
    phone = None
    if method == "mobile_money":
        phone = normalize_msisdn(payload.get("customer_phone"))
        if not phone:
            raise InvalidRequest("customer_phone must be a valid Kenyan mobile number for mobile money")
    branch_id = payload.get("branch_id")
    try:
        branch_id = int(branch_id) if branch_id not in (None, "") else None
    except (TypeError, ValueError):
        raise InvalidRequest("branch_id must be an integer")

    fields = dict(
        payment_type="pay_now",
        payment_method=method,
        customer_name=str(payload.get("customer_name") or "Walk-in customer"),
        customer_phone=phone,
        branch_id=branch_id,
        status="pos_order",
        is_pos=True,
    )

    if method == "mobile_money":
        try:
            order = build_order(items, **fields)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        current_app.logger.info("pos_order_created order_id=%s method=%s total=%s", order.id, method, order.total_amount)
        push = initiate_push_payment(int(order.id), actor=actor, phone=phone)
        db.session.refresh(order)
        return {"ok": True, "order": order.to_dict(), "payment": push}

    confirmation = None
    try:
        order = build_order(items, **fields)
        with order_lock(int(order.id)):
            order = load_order_for_update(int(order.id))
            confirmation = PaymentConfirmation(
                order_id=int(order.id),
                source="pos",
                payment_method="cash",
                payment_provider="pos",
                receipt_number=f"POS-{int(order.id)}",
            )
            outcome = apply_confirmation(order, confirmation, actor=actor)
            db.session.commit()
    except OrderFlowError as e:
        db.session.rollback()
        current_app.logger.warning("pos_checkout_rejected error=%s msg=%s", e.code, e)
        raise
    except Exception:
        db.session.rollback()
        current_app.logger.exception("pos_checkout_failed")
        raise
    current_app.logger.info("pos_order_settled order_id=%s total=%s", order.id, order.total_amount)
    after_confirmation(outcome, confirmation, actor=actor)
    return {"ok": True, **outcome.to_dict()}
