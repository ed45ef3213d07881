from __future__ import annotations

import os

from flask import Blueprint, current_app, jsonify, request

from orderflow.services.payment_reconciliation import apply_push_callback
from orderflow.services.withdrawal_service import apply_b2c_callback
from orderflow.utils.observability import get_request_id

mpesa_bp = Blueprint("mpesa_bp", __name__, url_prefix="/api/mpesa")

# The gateway retries anything that is not acknowledged with this body.
_ACCEPTED = {"ResultCode": 0, "ResultDesc": "Accepted"}


def _queue_enabled() -> bool:
    return (os.getenv("MPESA_CALLBACK_QUEUE") or "false").strip().lower() in ("1", "true", "yes", "on")


@mpesa_bp.post("/callback")
def stk_callback():
    payload = request.get_json(silent=True) or {}
    if _queue_enabled():
        try:
            from orderflow.tasks.order_tasks import process_mpesa_callback_task

            process_mpesa_callback_task.delay(payload=payload, trace_id=get_request_id())
            return jsonify(_ACCEPTED), 200
        except Exception as e:
            current_app.logger.warning("mpesa_callback_queue_unavailable err=%s", e)
    try:
        result = apply_push_callback(payload)
        current_app.logger.info("mpesa_callback_processed result=%s", result)
    except Exception:
        current_app.logger.exception("mpesa_callback_failed")
    return jsonify(_ACCEPTED), 200


@mpesa_bp.post("/b2c-callback")
def b2c_callback():
    payload = request.get_json(silent=True) or {}
    if _queue_enabled():
        try:
            from orderflow.tasks.order_tasks import process_b2c_callback_task

            process_b2c_callback_task.delay(payload=payload, trace_id=get_request_id())
            return jsonify(_ACCEPTED), 200
        except Exception as e:
            current_app.logger.warning("b2c_callback_queue_unavailable err=%s", e)
    try:
        result = apply_b2c_callback(payload)
        current_app.logger.info("b2c_callback_processed result=%s", result)
    except Exception:
        current_app.logger.exception("b2c_callback_failed")
    return jsonify(_ACCEPTED), 200
