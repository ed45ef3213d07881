from __future__ import annotations

from flask import Blueprint, jsonify, request

from orderflow.services.wallet_service import driver_wallet_summary
from orderflow.services.withdrawal_service import request_withdrawal
from orderflow.utils.auth import require_roles

driver_wallet_bp = Blueprint("driver_wallet_bp", __name__, url_prefix="/api/driver-wallet")


@driver_wallet_bp.get("")
def wallet():
    actor, err = require_roles("driver")
    if err:
        return err
    return jsonify({"ok": True, **driver_wallet_summary(int(actor.id))}), 200


@driver_wallet_bp.post("/withdraw")
def withdraw():
    actor, err = require_roles("driver")
    if err:
        return err
    data = request.get_json(silent=True) or {}
    result = request_withdrawal(int(actor.id), actor=actor, amount=data.get("amount"), phone=data.get("phone"))
    return jsonify(result), 200
