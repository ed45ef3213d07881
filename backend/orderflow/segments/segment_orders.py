from __future__ import annotations

from flask import Blueprint, jsonify, request

from orderflow.services.actors import CUSTOMER
from orderflow.services.errors import InvalidRequest, Unauthorized
from orderflow.services.order_service import create_order, get_order, order_detail
from orderflow.services.payment_reconciliation import initiate_push_payment
from orderflow.utils.auth import require_roles

orders_bp = Blueprint("orders_bp", __name__, url_prefix="/api/orders")


@orders_bp.post("")
def place_order():
    payload = request.get_json(silent=True) or {}
    order = create_order(payload)
    return jsonify({"ok": True, "order": order.to_dict()}), 201


@orders_bp.get("/<int:order_id>")
def fetch_order(order_id: int):
    actor, err = require_roles("admin", "pos", "driver")
    if err:
        return err
    order = get_order(order_id)
    if actor.is_driver and (order.driver_id is None or int(order.driver_id) != int(actor.id)):
        raise Unauthorized(f"{actor.label} is not assigned to order {order_id}", order_id=int(order_id))
    return jsonify({"ok": True, "order": order_detail(order_id)}), 200


@orders_bp.post("/<int:order_id>/stk-push")
def checkout_push(order_id: int):
    data = request.get_json(silent=True) or {}
    if data.get("amount") in (None, ""):
        raise InvalidRequest("amount is required", order_id=int(order_id))
    result = initiate_push_payment(
        order_id,
        actor=CUSTOMER,
        phone=data.get("phone_number") or data.get("phone"),
        expected_amount=data.get("amount"),
    )
    return jsonify(result), 200
