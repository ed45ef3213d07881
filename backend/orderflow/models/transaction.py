from datetime import datetime

from orderflow.extensions import db


class Transaction(db.Model):
    """Ledger entry. Amounts are never negative; the type carries the sign."""

    __tablename__ = "transactions"
    __table_args__ = (
        db.Index("ix_transactions_order_type_driver", "order_id", "transaction_type", "driver_id"),
    )

    id = db.Column(db.Integer, primary_key=True)

    # Null only for driver withdrawals.
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    driver_id = db.Column(db.Integer, db.ForeignKey("drivers.id"), nullable=True, index=True)
    driver_wallet_id = db.Column(db.Integer, db.ForeignKey("driver_wallets.id"), nullable=True, index=True)

    # payment | refund | tip | withdrawal | delivery_pay | driver_pay | delivery_fee_debit | cash_settlement
    transaction_type = db.Column(db.String(32), nullable=False, default="payment", index=True)
    payment_method = db.Column(db.String(24), nullable=False, default="system")  # card | mobile_money | cash | system
    payment_provider = db.Column(db.String(64), nullable=True)  # mpesa | cash_in_hand | driver_mpesa_manual | pos ...
    amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    status = db.Column(db.String(16), nullable=False, default="pending", index=True)  # pending | completed | failed | cancelled
    payment_status = db.Column(db.String(16), nullable=False, default="pending")  # pending | paid | failed | cancelled | unpaid

    receipt_number = db.Column(db.String(64), nullable=True)
    checkout_request_id = db.Column(db.String(128), nullable=True, index=True)
    merchant_request_id = db.Column(db.String(128), nullable=True)
    conversation_id = db.Column(db.String(128), nullable=True, index=True)
    phone_number = db.Column(db.String(32), nullable=True)
    transaction_date = db.Column(db.DateTime, nullable=True)

    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def append_note(self, line: str) -> None:
        line = (line or "").strip()
        if not line:
            return
        self.notes = f"{self.notes}\n{line}" if self.notes else line

    def to_dict(self):
        return {
            "id": int(self.id),
            "order_id": int(self.order_id) if self.order_id is not None else None,
            "driver_id": int(self.driver_id) if self.driver_id is not None else None,
            "driver_wallet_id": int(self.driver_wallet_id) if self.driver_wallet_id is not None else None,
            "transaction_type": self.transaction_type or "",
            "payment_method": self.payment_method or "",
            "payment_provider": self.payment_provider or "",
            "amount": float(self.amount or 0),
            "status": self.status or "pending",
            "payment_status": self.payment_status or "pending",
            "receipt_number": self.receipt_number or "",
            "checkout_request_id": self.checkout_request_id or "",
            "merchant_request_id": self.merchant_request_id or "",
            "conversation_id": self.conversation_id or "",
            "phone_number": self.phone_number or "",
            "transaction_date": self.transaction_date.isoformat() if self.transaction_date else None,
            "notes": self.notes or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
