from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from flask import current_app

from orderflow.extensions import db
from orderflow.models import Order
from orderflow.services import side_effects
from orderflow.services.actors import SYSTEM, Actor
from orderflow.services.errors import InvalidTransition, OrderFlowError, PaymentNotConfirmed
from orderflow.services.ledger_service import TxnStatus, TxnType, cancel_entries, find_entry, upsert_entry
from orderflow.services.order_financials import get_or_create_breakdown, get_or_create_split
from orderflow.services.order_locks import load_order_for_update, order_lock
from orderflow.services.wallet_service import credit, get_admin_wallet, get_driver_wallet
from orderflow.utils.delivery_fee import DeliveryFeeSplit
from orderflow.utils.money import ZERO, is_dust, to_money

# Providers meaning the driver physically collected the customer's money.
IN_HAND_PROVIDERS = ("cash_in_hand", "driver_mpesa_manual")

SPLIT_RULE_POS = "POS_NO_DELIVERY_FEE"


@dataclass
class SettlementResult:
    order_id: int
    settled: bool
    already_settled: bool = False
    pos: bool = False
    in_hand: bool = False
    items_total: Decimal = ZERO
    delivery_fee: Decimal = ZERO
    tip_amount: Decimal = ZERO
    merchant_share: Decimal = ZERO
    driver_share: Decimal = ZERO
    merchant_credit: Decimal = ZERO
    driver_credit: Decimal = ZERO
    entries: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "order_id": int(self.order_id),
            "settled": bool(self.settled),
            "already_settled": bool(self.already_settled),
            "pos": bool(self.pos),
            "in_hand": bool(self.in_hand),
            "items_total": float(self.items_total),
            "delivery_fee": float(self.delivery_fee),
            "tip_amount": float(self.tip_amount),
            "merchant_share": float(self.merchant_share),
            "driver_share": float(self.driver_share),
            "merchant_credit": float(self.merchant_credit),
            "driver_credit": float(self.driver_credit),
            "entries": list(self.entries),
        }


def default_provider(order: Order) -> str:
    if order.is_pos:
        return "pos"
    method = (order.payment_method or "").strip().lower()
    if method == "mobile_money":
        return "mpesa"
    if method == "cash":
        return "cash_in_hand"
    return method or "system"


def collected_in_hand(order: Order) -> bool:
    if order.is_pos:
        return False
    entry = find_entry(int(order.id), TxnType.PAYMENT)
    if entry is not None and entry.status != TxnStatus.FAILED:
        return (entry.payment_provider or "") in IN_HAND_PROVIDERS
    return order.payment_type == "pay_on_delivery" and (order.payment_method or "") == "cash"


def apply_settlement(order: Order, *, actor: Actor = SYSTEM, now: datetime | None = None) -> SettlementResult:
    """Turn a completed, paid order into ledger entries and wallet credits.

    Must run under ``order_lock`` on a row loaded with ``load_order_for_update``;
    it flushes but never commits, so the caller's unit of work decides.
    """
    if order.driver_pay_credited:
        return SettlementResult(order_id=int(order.id), settled=False, already_settled=True, pos=bool(order.is_pos))
    if order.status != "completed":
        raise InvalidTransition(order.status, "completed", order_id=int(order.id), reason="settlement requires a completed order")
    if order.payment_status != "paid":
        raise PaymentNotConfirmed(f"order {order.id} is not paid", order_id=int(order.id))

    now = now or datetime.utcnow()
    breakdown = get_or_create_breakdown(order)
    pos = bool(order.is_pos)
    in_hand = collected_in_hand(order)
    driver_id = None if pos else order.driver_id
    if pos:
        split = DeliveryFeeSplit(delivery_fee=ZERO, merchant_share=ZERO, driver_share=ZERO, rule=SPLIT_RULE_POS)
    else:
        split = get_or_create_split(order, breakdown)
    method = order.payment_method or "system"
    result = SettlementResult(
        order_id=int(order.id),
        settled=True,
        pos=pos,
        in_hand=in_hand,
        items_total=breakdown.items_total,
        delivery_fee=split.delivery_fee,
        tip_amount=breakdown.tip_amount,
        merchant_share=split.merchant_share,
        driver_share=split.driver_share,
    )

    existing_payment = find_entry(int(order.id), TxnType.PAYMENT)
    payment, _ = upsert_entry(
        int(order.id),
        TxnType.PAYMENT,
        amount=breakdown.items_total,
        status=TxnStatus.COMPLETED,
        payment_status="paid",
        payment_method=method,
        payment_provider=None if (existing_payment and existing_payment.payment_provider) else default_provider(order),
        transaction_date=now,
        keep_receipt=True,
        note=f"Items total settled on completion of order #{order.id}.",
    )
    result.entries.append(int(payment.id))

    driver_credit = ZERO
    wallet = None
    if pos:
        cancel_entries(int(order.id), TxnType.DELIVERY_PAY, note="Point-of-sale order carries no delivery fee.")
    else:
        merchant_note = f"Merchant share of delivery fee for order #{order.id}."
        if in_hand and split.driver_share > ZERO:
            merchant_note = (
                f"Merchant share of delivery fee for order #{order.id}; "
                f"driver retained KES {split.driver_share} from cash collected."
            )
        merchant_entry, _ = upsert_entry(
            int(order.id),
            TxnType.DELIVERY_PAY,
            amount=split.merchant_share,
            create=not is_dust(split.merchant_share),
            status=TxnStatus.COMPLETED,
            payment_status="paid",
            payment_method=method,
            transaction_date=now,
            note=merchant_note,
        )
        if merchant_entry is not None:
            result.entries.append(int(merchant_entry.id))

        if driver_id is not None and not in_hand:
            if not is_dust(split.driver_share) or not is_dust(breakdown.tip_amount):
                wallet = get_driver_wallet(int(driver_id))
            if not is_dust(split.driver_share):
                entry, _ = upsert_entry(
                    int(order.id),
                    TxnType.DELIVERY_PAY,
                    driver_id=int(driver_id),
                    driver_wallet_id=int(wallet.id),
                    amount=split.driver_share,
                    status=TxnStatus.COMPLETED,
                    payment_status="paid",
                    payment_method=method,
                    transaction_date=now,
                    note=f"Driver delivery pay for order #{order.id}.",
                )
                result.entries.append(int(entry.id))
                driver_credit += split.driver_share
            if not is_dust(breakdown.tip_amount):
                entry, _ = upsert_entry(
                    int(order.id),
                    TxnType.TIP,
                    driver_id=int(driver_id),
                    driver_wallet_id=int(wallet.id),
                    amount=breakdown.tip_amount,
                    status=TxnStatus.COMPLETED,
                    payment_status="paid",
                    payment_method=method,
                    transaction_date=now,
                    note=f"Tip for order #{order.id}.",
                )
                result.entries.append(int(entry.id))
                driver_credit += breakdown.tip_amount

    merchant_credit = to_money(breakdown.items_total + split.merchant_share)
    credit(get_admin_wallet(), merchant_credit, total_revenue=merchant_credit, total_orders=1)
    result.merchant_credit = merchant_credit

    if wallet is not None and driver_credit > ZERO:
        tip_paid = not is_dust(breakdown.tip_amount)
        pay_paid = not is_dust(split.driver_share)
        credit(
            wallet,
            driver_credit,
            total_delivery_pay=split.driver_share if pay_paid else 0,
            total_delivery_pay_count=1 if pay_paid else 0,
            total_tips_received=breakdown.tip_amount if tip_paid else 0,
            total_tips_count=1 if tip_paid else 0,
        )
    result.driver_credit = to_money(driver_credit)

    order.driver_pay_credited = True
    order.driver_pay_credited_at = now
    order.driver_pay_amount = split.driver_share
    db.session.add(order)
    db.session.flush()
    return result


def settle_order(order_id: int, *, actor: Actor = SYSTEM) -> SettlementResult:
    """Settle a completed order in its own unit of work. Safe to call repeatedly."""
    try:
        with order_lock(order_id):
            order = load_order_for_update(order_id)
            result = apply_settlement(order, actor=actor)
            db.session.commit()
    except OrderFlowError as e:
        db.session.rollback()
        current_app.logger.warning("order_settlement_rejected order_id=%s error=%s msg=%s", order_id, e.code, e)
        raise
    except Exception:
        db.session.rollback()
        current_app.logger.exception("order_settlement_failed order_id=%s", order_id)
        raise
    if result.settled:
        side_effects.after_settlement(order, result, actor=actor)
    return result
