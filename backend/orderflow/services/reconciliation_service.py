from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal

from orderflow.extensions import db
from orderflow.models import AdminWallet, DriverWallet, Order, ReconciliationReport, Transaction
from orderflow.services.ledger_service import TxnStatus, TxnType
from orderflow.utils.money import ZERO, to_money


def _sum(q) -> Decimal:
    total = ZERO
    for row in q.all():
        total += to_money(row.amount)
    return to_money(total)


def _settled(q):
    return q.join(Order, Order.id == Transaction.order_id).filter(Order.driver_pay_credited.is_(True))


def merchant_ledger_balance() -> Decimal:
    completed = Transaction.query.filter(Transaction.status == TxnStatus.COMPLETED)
    payments = _sum(_settled(completed.filter(Transaction.transaction_type == TxnType.PAYMENT)))
    fees = _sum(
        _settled(
            completed.filter(Transaction.transaction_type == TxnType.DELIVERY_PAY).filter(Transaction.driver_id.is_(None))
        )
    )
    refunds = _sum(completed.filter(Transaction.transaction_type == TxnType.REFUND))
    return to_money(payments + fees - refunds)


def driver_ledger_balance(driver_id: int) -> Decimal:
    mine = Transaction.query.filter(Transaction.driver_id == int(driver_id))
    completed = mine.filter(Transaction.status == TxnStatus.COMPLETED)
    earned = _sum(
        _settled(completed.filter(Transaction.transaction_type.in_((TxnType.DELIVERY_PAY, TxnType.TIP))))
    )
    owed = _sum(completed.filter(Transaction.transaction_type == TxnType.CASH_SETTLEMENT))
    withdrawn = _sum(
        mine.filter(Transaction.transaction_type == TxnType.WITHDRAWAL).filter(
            Transaction.status.in_((TxnStatus.PENDING, TxnStatus.COMPLETED))
        )
    )
    return to_money(earned - owed - withdrawn)


def _drift_item(kind: str, wallet, computed: Decimal, tolerance: Decimal) -> dict | None:
    current = to_money(wallet.balance)
    drift = to_money(current - computed)
    if abs(drift) <= tolerance:
        return None
    item = {
        "wallet": kind,
        "wallet_id": int(wallet.id),
        "stored_balance": float(current),
        "computed_balance": float(computed),
        "drift": float(drift),
    }
    if kind == "driver":
        item["driver_id"] = int(wallet.driver_id)
    return item


def recompute_wallet_balances(*, since: str | None = None, tolerance: float = 0.01) -> dict:
    """Rebuild every wallet balance from the ledger and report the ones that disagree."""
    limit = to_money(tolerance)
    drift_items = []
    wallet_count = 0

    for wallet in AdminWallet.query.order_by(AdminWallet.id.asc()).all():
        wallet_count += 1
        item = _drift_item("merchant", wallet, merchant_ledger_balance(), limit)
        if item:
            drift_items.append(item)

    for wallet in DriverWallet.query.order_by(DriverWallet.driver_id.asc()).all():
        wallet_count += 1
        item = _drift_item("driver", wallet, driver_ledger_balance(int(wallet.driver_id)), limit)
        if item:
            drift_items.append(item)

    return {
        "ok": True,
        "scope": "wallet_ledger",
        "since": since or "",
        "wallet_count": wallet_count,
        "drift_count": len(drift_items),
        "drift_items": drift_items,
        "generated_at": datetime.utcnow().isoformat(),
    }


def persist_report(summary: dict, *, created_by: int | None = None) -> ReconciliationReport:
    report = ReconciliationReport(
        scope=(summary.get("scope") or "wallet_ledger")[:64],
        wallet_count=int(summary.get("wallet_count") or 0),
        drift_count=int(summary.get("drift_count") or 0),
        summary_json=json.dumps(summary)[:200000],
        created_by=int(created_by) if created_by is not None else None,
        created_at=datetime.utcnow(),
    )
    db.session.add(report)
    db.session.commit()
    return report
