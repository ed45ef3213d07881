from __future__ import annotations

from datetime import datetime

from orderflow.extensions import db
from orderflow.models import Transaction
from orderflow.utils.money import to_money


class TxnType:
    PAYMENT = "payment"
    REFUND = "refund"
    TIP = "tip"
    WITHDRAWAL = "withdrawal"
    DELIVERY_PAY = "delivery_pay"
    DRIVER_PAY = "driver_pay"
    DELIVERY_FEE_DEBIT = "delivery_fee_debit"
    CASH_SETTLEMENT = "cash_settlement"

    ALL = {PAYMENT, REFUND, TIP, WITHDRAWAL, DELIVERY_PAY, DRIVER_PAY, DELIVERY_FEE_DEBIT, CASH_SETTLEMENT}


class TxnStatus:
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


_UPSERT_FIELDS = (
    "driver_wallet_id",
    "payment_method",
    "payment_provider",
    "status",
    "payment_status",
    "receipt_number",
    "checkout_request_id",
    "merchant_request_id",
    "conversation_id",
    "phone_number",
    "transaction_date",
)


def find_entry(order_id: int, transaction_type: str, *, driver_id: int | None = None) -> Transaction | None:
    """Authoritative (non-cancelled) entry for the ledger key (order, type, driver)."""
    q = Transaction.query.filter(
        Transaction.order_id == int(order_id),
        Transaction.transaction_type == transaction_type,
        Transaction.status != TxnStatus.CANCELLED,
    )
    if driver_id is None:
        q = q.filter(Transaction.driver_id.is_(None))
    else:
        q = q.filter(Transaction.driver_id == int(driver_id))
    return q.order_by(Transaction.id.asc()).first()


def upsert_entry(
    order_id: int,
    transaction_type: str,
    *,
    amount,
    driver_id: int | None = None,
    note: str | None = None,
    create: bool = True,
    keep_receipt: bool = False,
    **fields,
) -> tuple[Transaction | None, bool]:
    """Create or update the single entry for (order, type, driver).

    Returns ``(entry, created)``. With ``create=False`` a missing entry is left
    missing and ``(None, False)`` comes back. ``keep_receipt`` preserves a
    receipt number already recorded on the entry.
    """
    if transaction_type not in TxnType.ALL:
        raise ValueError(f"unknown transaction_type {transaction_type}")
    unknown = set(fields) - set(_UPSERT_FIELDS)
    if unknown:
        raise ValueError(f"unsupported ledger fields {sorted(unknown)}")

    entry = find_entry(order_id, transaction_type, driver_id=driver_id)
    created = False
    if entry is None:
        if not create:
            return None, False
        entry = Transaction(
            order_id=int(order_id),
            transaction_type=transaction_type,
            driver_id=int(driver_id) if driver_id is not None else None,
            payment_method="system",
            status=TxnStatus.PENDING,
            payment_status="pending",
        )
        created = True

    entry.amount = to_money(amount)
    for name, value in fields.items():
        if value is None:
            continue
        if name == "receipt_number" and keep_receipt and entry.receipt_number:
            continue
        setattr(entry, name, value)
    if note and note not in (entry.notes or ""):
        entry.append_note(note)
    entry.updated_at = datetime.utcnow()
    db.session.add(entry)
    db.session.flush()
    return entry, created


def cancel_entries(order_id: int, transaction_type: str, *, note: str) -> int:
    """Mark every live entry of ``transaction_type`` for the order as cancelled with a zero amount."""
    rows = Transaction.query.filter(
        Transaction.order_id == int(order_id),
        Transaction.transaction_type == transaction_type,
        Transaction.status != TxnStatus.CANCELLED,
    ).all()
    for row in rows:
        row.status = TxnStatus.CANCELLED
        row.payment_status = "cancelled"
        row.amount = to_money(0)
        row.append_note(note)
        db.session.add(row)
    if rows:
        db.session.flush()
    return len(rows)


def record_entry(transaction_type: str, *, amount, order_id: int | None = None, note: str | None = None, **fields) -> Transaction:
    """Insert a free-standing entry (withdrawals, refunds) that has no upsert key."""
    if transaction_type not in TxnType.ALL:
        raise ValueError(f"unknown transaction_type {transaction_type}")
    entry = Transaction(
        order_id=int(order_id) if order_id is not None else None,
        transaction_type=transaction_type,
        amount=to_money(amount),
        payment_method=fields.pop("payment_method", None) or "system",
        status=fields.pop("status", None) or TxnStatus.PENDING,
        payment_status=fields.pop("payment_status", None) or "pending",
        **fields,
    )
    if note:
        entry.append_note(note)
    db.session.add(entry)
    db.session.flush()
    return entry


def entries_for_order(order_id: int) -> list[Transaction]:
    return Transaction.query.filter_by(order_id=int(order_id)).order_by(Transaction.id.asc()).all()
