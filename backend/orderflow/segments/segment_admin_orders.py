from __future__ import annotations

from flask import Blueprint, jsonify, request

from orderflow.extensions import db
from orderflow.models import ReconciliationReport, Transaction
from orderflow.services.errors import InvalidRequest
from orderflow.services.ledger_service import TxnType
from orderflow.services.order_service import assign_driver, record_refund
from orderflow.services.order_state_machine import advance_status
from orderflow.services.reconciliation_service import persist_report, recompute_wallet_balances
from orderflow.services.settlement_service import settle_order
from orderflow.services.wallet_service import get_admin_wallet
from orderflow.utils.auth import require_roles
from orderflow.utils.idempotency import get_idempotency_key
from orderflow.utils.settings_store import get_driver_pay_settings, save_driver_pay_settings

admin_orders_bp = Blueprint("admin_orders_bp", __name__, url_prefix="/api/admin")


def _int_arg(name: str, default: int | None = None) -> int | None:
    raw = (request.args.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise InvalidRequest(f"{name} must be an integer")


@admin_orders_bp.patch("/orders/<int:order_id>/status")
def change_status(order_id: int):
    actor, err = require_roles("admin")
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


@admin_orders_bp.post("/orders/<int:order_id>/assign-driver")
def assign(order_id: int):
    actor, err = require_roles("admin")
    if err:
        return err
    data = request.get_json(silent=True) or {}
    try:
        driver_id = int(data.get("driver_id"))
    except (TypeError, ValueError):
        raise InvalidRequest("driver_id must be an integer", order_id=order_id)
    order = assign_driver(order_id, driver_id, actor=actor)
    return jsonify({"ok": True, "order": order.to_dict()}), 200


@admin_orders_bp.post("/orders/<int:order_id>/settle")
def settle(order_id: int):
    actor, err = require_roles("admin")
    if err:
        return err
    result = settle_order(order_id, actor=actor)
    return jsonify({"ok": True, "settlement": result.to_dict()}), 200


@admin_orders_bp.post("/orders/<int:order_id>/refund")
def refund(order_id: int):
    actor, err = require_roles("admin")
    if err:
        return err
    data = request.get_json(silent=True) or {}
    entry = record_refund(order_id, actor=actor, amount=data.get("amount"), reason=str(data.get("reason") or ""))
    return jsonify({"ok": True, "transaction": entry.to_dict(), "wallet": get_admin_wallet().to_dict()}), 201


@admin_orders_bp.get("/wallet")
def merchant_wallet():
    actor, err = require_roles("admin")
    if err:
        return err
    wallet = get_admin_wallet()
    db.session.commit()
    return jsonify({"ok": True, "wallet": wallet.to_dict()}), 200


@admin_orders_bp.get("/transactions")
def transactions():
    actor, err = require_roles("admin")
    if err:
        return err
    q = Transaction.query
    order_id = _int_arg("order_id")
    if order_id is not None:
        q = q.filter(Transaction.order_id == order_id)
    txn_type = (request.args.get("transaction_type") or "").strip().lower()
    if txn_type:
        if txn_type not in TxnType.ALL:
            raise InvalidRequest(f"unknown transaction_type {txn_type}")
        q = q.filter(Transaction.transaction_type == txn_type)
    limit = max(1, min(_int_arg("limit", 100), 500))
    rows = q.order_by(Transaction.created_at.desc(), Transaction.id.desc()).limit(limit).all()
    return jsonify({"ok": True, "items": [r.to_dict() for r in rows]}), 200


@admin_orders_bp.get("/reconciliation")
def reconciliation():
    actor, err = require_roles("admin")
    if err:
        return err
    summary = recompute_wallet_balances(since=(request.args.get("since") or "").strip() or None)
    if (request.args.get("persist") or "").strip().lower() in ("1", "true", "yes"):
        report = persist_report(summary, created_by=actor.id)
        summary["report_id"] = int(report.id)
    latest = ReconciliationReport.query.order_by(ReconciliationReport.created_at.desc()).first()
    return jsonify({"ok": True, "summary": summary, "latest_report": latest.to_dict() if latest else None}), 200


@admin_orders_bp.get("/settings/driver-pay")
def driver_pay_settings():
    actor, err = require_roles("admin")
    if err:
        return err
    return jsonify({"ok": True, "settings": get_driver_pay_settings().to_dict()}), 200


@admin_orders_bp.put("/settings/driver-pay")
def update_driver_pay_settings():
    actor, err = require_roles("admin")
    if err:
        return err
    data = request.get_json(silent=True) or {}
    enabled = data.get("enabled")
    if not isinstance(enabled, bool):
        raise InvalidRequest("enabled must be a boolean")
    try:
        amount = float(data.get("amount") or 0)
    except (TypeError, ValueError):
        raise InvalidRequest("amount must be a number")
    if amount < 0:
        raise InvalidRequest("amount cannot be negative")
    settings = save_driver_pay_settings(enabled=enabled, amount=amount)
    return jsonify({"ok": True, "settings": settings.to_dict()}), 200
