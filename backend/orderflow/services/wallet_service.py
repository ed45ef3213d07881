from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from orderflow.extensions import db
from orderflow.models import AdminWallet, DriverWallet, Order, Transaction
from orderflow.models.admin_wallet import MERCHANT_WALLET_KEY
from orderflow.services.ledger_service import TxnStatus, TxnType
from orderflow.services.order_locks import serialized
from orderflow.utils.money import ZERO, non_negative, to_money

_COUNTERS = {
    AdminWallet: ("total_revenue", "total_orders"),
    DriverWallet: ("total_tips_received", "total_tips_count", "total_delivery_pay", "total_delivery_pay_count"),
}

# Statuses whose tips are still held back from withdrawal.
_ON_HOLD_EXCLUDED = ("completed", "cancelled", "pos_order")


def _merchant_wallet_row() -> AdminWallet | None:
    return AdminWallet.query.filter_by(singleton_key=MERCHANT_WALLET_KEY).first()


def get_admin_wallet() -> AdminWallet:
    """Return the merchant wallet, creating it on first use.

    The baseline migration seeds the row; lazy creation only matters for
    schemas built with ``create_all``. Creation is serialized in-process and the
    unique ``singleton_key`` stops a racing worker from inserting a second one.
    """
    wallet = _merchant_wallet_row()
    if wallet is not None:
        return wallet
    with serialized("admin-wallet"):
        wallet = _merchant_wallet_row()
        if wallet is not None:
            return wallet
        wallet = AdminWallet(singleton_key=MERCHANT_WALLET_KEY, balance=ZERO, total_revenue=ZERO, total_orders=0)
        try:
            with db.session.begin_nested():
                db.session.add(wallet)
        except IntegrityError:
            current_app.logger.info("merchant_wallet_created_concurrently")
            wallet = _merchant_wallet_row()
    return wallet


def get_driver_wallet(driver_id: int, *, create: bool = True) -> DriverWallet | None:
    wallet = DriverWallet.query.filter_by(driver_id=int(driver_id)).first()
    if wallet is None and create:
        wallet = DriverWallet(
            driver_id=int(driver_id),
            balance=ZERO,
            total_tips_received=ZERO,
            total_tips_count=0,
            total_delivery_pay=ZERO,
            total_delivery_pay_count=0,
        )
        db.session.add(wallet)
        db.session.flush()
    return wallet


def credit(wallet, delta, **counters):
    """Apply ``delta`` (negative for a debit) and counter increments to a wallet.

    This is the only way wallet balances change. The increment runs as one
    ``UPDATE ... SET col = col + :delta`` so concurrent writers cannot lose
    each other's updates; the caller's order lock keeps the surrounding
    ledger writes consistent with it.
    """
    model = type(wallet)
    allowed = _COUNTERS.get(model)
    if allowed is None:
        raise TypeError(f"not a wallet: {model.__name__}")
    unknown = set(counters) - set(allowed)
    if unknown:
        raise ValueError(f"unknown wallet counters {sorted(unknown)}")

    amount = to_money(delta)
    values = {"balance": model.balance + amount, "updated_at": datetime.utcnow()}
    for name, inc in counters.items():
        if not inc:
            continue
        column = getattr(model, name)
        values[name] = column + (inc if isinstance(inc, int) else to_money(inc))

    db.session.flush()
    db.session.execute(
        update(model).where(model.id == wallet.id).values(**values).execution_options(synchronize_session=False)
    )
    db.session.refresh(wallet)
    current_app.logger.info(
        "wallet_credit wallet=%s:%s delta=%s balance=%s counters=%s",
        model.__tablename__,
        int(wallet.id),
        amount,
        wallet.balance,
        {k: str(v) for k, v in counters.items() if v},
    )
    return wallet


def amount_on_hold(driver_id: int):
    """Tips on this driver's orders that have not completed yet."""
    rows = (
        Order.query.filter(Order.driver_id == int(driver_id))
        .filter(Order.status.notin_(_ON_HOLD_EXCLUDED))
        .all()
    )
    total = ZERO
    for order in rows:
        total += non_negative(order.tip_amount)
    return to_money(total)


def available_balance(wallet: DriverWallet):
    return non_negative(to_money(wallet.balance) - amount_on_hold(int(wallet.driver_id)))


def _recent(driver_id: int, transaction_type: str, limit: int = 20) -> list[dict]:
    rows = (
        Transaction.query.filter_by(driver_id=int(driver_id), transaction_type=transaction_type)
        .filter(Transaction.status != TxnStatus.CANCELLED)
        .order_by(Transaction.created_at.desc(), Transaction.id.desc())
        .limit(limit)
        .all()
    )
    return [r.to_dict() for r in rows]


def driver_wallet_summary(driver_id: int) -> dict:
    wallet = get_driver_wallet(driver_id)
    db.session.commit()
    on_hold = amount_on_hold(driver_id)
    return {
        "wallet": wallet.to_dict(),
        "balance": float(to_money(wallet.balance)),
        "amount_on_hold": float(on_hold),
        "available_balance": float(non_negative(to_money(wallet.balance) - on_hold)),
        "recent_tips": _recent(driver_id, TxnType.TIP),
        "recent_delivery_payments": _recent(driver_id, TxnType.DELIVERY_PAY),
        "recent_cash_settlements": _recent(driver_id, TxnType.CASH_SETTLEMENT),
        "recent_withdrawals": _recent(driver_id, TxnType.WITHDRAWAL),
    }
