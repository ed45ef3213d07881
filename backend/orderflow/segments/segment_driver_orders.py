from __future__ import annotations

from flask import Blueprint, jsonify, request

from orderflow.services.order_service import list_driver_orders, respond_to_assignment
from orderflow.services.order_state_machine import advance_status
from orderflow.services.payment_reconciliation import confirm_manual_payment, initiate_push_payment
from orderflow.utils.auth import require_roles
from orderflow.utils.idempotency import get_idempotency_key

driver_orders_bp = Blueprint("driver_orders_bp", __name__, url_prefix="/api/driver-orders")


@driver_orders_bp.get("")
def my_orders():
    actor, err = require_roles("driver")
    if err:
        return err
    status = (request.args.get("status") or "").strip().lower() or None
    rows = list_driver_orders(int(actor.id), status=status)
    return jsonify({"ok": True, "items": [o.to_dict() for o in rows]}), 200


@driver_orders_bp.post("/<int:order_id>/respond")
def respond(order_id: int):
    actor, err = require_roles("driver")
    if err:
        return err
    data = request.get_json(silent=True) or {}
    order = respond_to_assignment(order_id, actor=actor, accepted=data.get("accepted"))
    return jsonify({"ok": True, "order": order.to_dict()}), 200


@driver_orders_bp.patch("/<int:order_id>/status")
def update_status(order_id: int):
    actor, err = require_roles("driver")
    if err:
        return err
    data = request.get_json(silent=True) or {}
    outcome = advance_status(
        order_id,
        str(data.get("status") or ""),
        actor=actor,
        idempotency_key=get_idempotency_key(),
        reason=str(data.get("reason") or "")[:240],
    )
    return jsonify({"ok": True, **outcome.to_dict()}), 200


@driver_orders_bp.post("/<int:order_id>/initiate-payment")
def initiate_payment(order_id: int):
    actor, err = require_roles("driver")
    if err:
        return err
    data = request.get_json(silent=True) or {}
    result = initiate_push_payment(order_id, actor=actor, phone=data.get("customer_phone") or data.get("phone"))
    return jsonify(result), 200


@driver_orders_bp.post("/<int:order_id>/confirm-manual-payment")
def confirm_manual(order_id: int):
    actor, err = require_roles("driver", "admin")
    if err:
        return err
    data = request.get_json(silent=True) or {}
    outcome = confirm_manual_payment(
        order_id,
        actor=actor,
        method=data.get("method"),
        receipt=data.get("receipt"),
    )
    return jsonify({"ok": True, **outcome.to_dict()}), 200
