from __future__ import annotations

from datetime import datetime

from flask import current_app

from orderflow.extensions import db
from orderflow.integrations.common import IntegrationDisabledError, IntegrationMisconfiguredError
from orderflow.integrations.payments.factory import build_payments_provider
from orderflow.models import Driver, DriverWallet, Transaction
from orderflow.services.actors import Actor
from orderflow.services.errors import GatewayUnavailable, InsufficientBalance, InvalidRequest, Unauthorized
from orderflow.services.ledger_service import TxnStatus, TxnType, record_entry
from orderflow.services.order_locks import serialized
from orderflow.services.payment_reconciliation import claim_webhook_event, finish_webhook_event
from orderflow.services.wallet_service import available_balance, credit, get_driver_wallet
from orderflow.utils.events import log_event
from orderflow.utils.money import ZERO, to_money
from orderflow.utils.phone import normalize_msisdn


def _wallet_key(driver_id: int) -> str:
    return f"driver-wallet:{int(driver_id)}"


def _reverse(entry: Transaction, wallet: DriverWallet, *, reason: str) -> None:
    if entry.status in (TxnStatus.FAILED, TxnStatus.CANCELLED):
        return
    credit(wallet, to_money(entry.amount))
    entry.status = TxnStatus.FAILED
    entry.payment_status = "failed"
    entry.updated_at = datetime.utcnow()
    entry.append_note(f"Payout failed, KES {to_money(entry.amount)} returned to wallet: {reason}")
    db.session.add(entry)


def request_withdrawal(driver_id: int, *, actor: Actor, amount, phone: str | None = None) -> dict:
    """Reserve ``amount`` from the driver's wallet and pay it out over M-Pesa B2C."""
    if not (actor.is_driver and actor.id is not None and int(actor.id) == int(driver_id)):
        raise Unauthorized(f"{actor.label} cannot withdraw from driver {driver_id}'s wallet")
    value = to_money(amount)
    if value <= ZERO:
        raise InvalidRequest("amount must be greater than zero")
    driver = db.session.get(Driver, int(driver_id))
    if driver is None:
        raise InvalidRequest(f"driver {driver_id} not found")
    msisdn = normalize_msisdn(phone or driver.phone)
    if not msisdn:
        raise InvalidRequest("phone must be a valid Kenyan mobile number")

    try:
        provider = build_payments_provider()
    except (IntegrationDisabledError, IntegrationMisconfiguredError) as e:
        raise GatewayUnavailable(str(e)) from e

    with serialized(_wallet_key(driver_id)):
        wallet = get_driver_wallet(int(driver_id))
        available = available_balance(wallet)
        if value > available:
            db.session.rollback()
            raise InsufficientBalance(f"requested {value} but only {available} is available")
        entry = record_entry(
            TxnType.WITHDRAWAL,
            amount=value,
            driver_id=int(driver_id),
            driver_wallet_id=int(wallet.id),
            payment_method="mobile_money",
            payment_provider="mpesa_b2c",
            phone_number=msisdn,
            note=f"Withdrawal of KES {value} to {msisdn} requested.",
        )
        credit(wallet, -value)
        db.session.commit()

        try:
            result = provider.send_payout(
                phone=msisdn,
                amount=value,
                reference=f"WD{int(entry.id)}",
                remarks=f"Driver {int(driver_id)} withdrawal",
            )
        except GatewayUnavailable as e:
            _reverse(entry, wallet, reason=str(e))
            db.session.commit()
            current_app.logger.warning("withdrawal_gateway_unavailable driver_id=%s entry=%s err=%s", driver_id, entry.id, e)
            raise

        if not result.accepted:
            _reverse(entry, wallet, reason=result.message or "payout rejected")
            db.session.commit()
            current_app.logger.warning("withdrawal_rejected driver_id=%s entry=%s msg=%s", driver_id, entry.id, result.message)
            raise GatewayUnavailable(f"payout rejected: {result.message or 'no reason given'}")

        entry.conversation_id = result.conversation_id or result.originator_conversation_id or None
        entry.append_note(f"B2C accepted: conversation {result.conversation_id} / {result.originator_conversation_id}")
        db.session.add(entry)
        db.session.commit()

    log_event(
        "withdrawal_requested",
        actor=actor,
        subject_type="transaction",
        subject_id=int(entry.id),
        metadata={"driver_id": int(driver_id), "amount": value, "conversation_id": entry.conversation_id or ""},
    )
    current_app.logger.info("withdrawal_requested driver_id=%s entry=%s amount=%s", driver_id, entry.id, value)
    return {
        "ok": True,
        "status": "pending",
        "transaction": entry.to_dict(),
        "wallet": wallet.to_dict(),
    }


def _result_parameters(result: dict) -> dict:
    params = result.get("ResultParameters") if isinstance(result.get("ResultParameters"), dict) else {}
    items = params.get("ResultParameter")
    if isinstance(items, dict):
        items = [items]
    out = {}
    for item in items or []:
        if isinstance(item, dict) and item.get("Key"):
            out[str(item["Key"])] = item.get("Value")
    return out


def apply_b2c_callback(payload: dict) -> dict:
    """Settle a driver payout from the gateway's B2C result."""
    result = payload.get("Result") if isinstance(payload, dict) else None
    if not isinstance(result, dict):
        current_app.logger.warning("b2c_callback_malformed")
        return {"ok": False, "error": "MALFORMED_CALLBACK"}

    conversation_id = str(result.get("ConversationID") or "").strip()
    originator_id = str(result.get("OriginatorConversationID") or "").strip()
    try:
        result_code = int(str(result.get("ResultCode")).strip())
    except (TypeError, ValueError):
        current_app.logger.warning("b2c_callback_incomplete conversation=%s", conversation_id)
        return {"ok": False, "error": "MALFORMED_CALLBACK"}
    result_desc = str(result.get("ResultDesc") or "").strip()

    event = claim_webhook_event(
        "b2c",
        f"b2c:{conversation_id or originator_id}:{result_code}",
        reference=conversation_id or originator_id,
        payload=payload,
    )
    if event is None:
        return {"ok": True, "replayed": True}

    ids = [i for i in (conversation_id, originator_id) if i]
    entry = None
    if ids:
        entry = (
            Transaction.query.filter_by(transaction_type=TxnType.WITHDRAWAL)
            .filter(Transaction.conversation_id.in_(ids))
            .order_by(Transaction.id.desc())
            .first()
        )
    if entry is None or entry.driver_id is None:
        current_app.logger.warning("b2c_callback_unknown conversation=%s", conversation_id)
        finish_webhook_event(event, "ignored", error="unknown conversation")
        return {"ok": True, "ignored": True}

    driver_id = int(entry.driver_id)
    with serialized(_wallet_key(driver_id)):
        entry = db.session.get(Transaction, int(entry.id))
        db.session.refresh(entry)
        if entry.status != TxnStatus.PENDING:
            db.session.rollback()
            finish_webhook_event(event, "processed")
            return {"ok": True, "transaction_id": int(entry.id), "status": entry.status, "already_resolved": True}
        wallet = get_driver_wallet(driver_id)
        if result_code == 0:
            params = _result_parameters(result)
            entry.status = TxnStatus.COMPLETED
            entry.payment_status = "paid"
            entry.receipt_number = (str(params.get("TransactionReceipt") or result.get("TransactionID") or "").strip()[:64] or None)
            entry.transaction_date = datetime.utcnow()
            entry.append_note(f"Payout completed: {result_desc}")
            db.session.add(entry)
        else:
            _reverse(entry, wallet, reason=f"{result_code} {result_desc}".strip())
        db.session.commit()

    finish_webhook_event(event, "processed")
    current_app.logger.info("b2c_callback_applied entry=%s driver_id=%s code=%s", entry.id, driver_id, result_code)
    return {"ok": True, "transaction_id": int(entry.id), "status": entry.status}
