from __future__ import annotations

from flask import Blueprint, jsonify, request

from orderflow.services.errors import OrderFlowError
from orderflow.services.pos_service import checkout
from orderflow.utils.auth import require_roles
from orderflow.utils.idempotency import lookup_response, release_key, store_response

pos_bp = Blueprint("pos_bp", __name__, url_prefix="/api/pos")


@pos_bp.post("/checkout")
def pos_checkout():
    actor, err = require_roles("pos", "admin")
    if err:
        return err
    payload = request.get_json(silent=True) or {}
    idem = lookup_response("pos_checkout", payload, actor_id=actor.id)
    if idem and idem[0] in ("hit", "conflict"):
        return jsonify(idem[1]), idem[2]
    row = idem[1] if idem and idem[0] == "miss" else None
    try:
        result = checkout(payload, actor=actor)
    except OrderFlowError:
        if row is not None:
            release_key(row)
        raise
    if row is not None:
        store_response(row, result, 201)
    return jsonify(result), 201
