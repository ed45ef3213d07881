from datetime import datetime

from orderflow.extensions import db


MERCHANT_WALLET_KEY = "merchant"


class AdminWallet(db.Model):
    """Merchant wallet. Exactly one row exists."""

    __tablename__ = "admin_wallets"

    id = db.Column(db.Integer, primary_key=True)
    # Fixed value under a unique index so a second merchant wallet cannot be inserted.
    singleton_key = db.Column(db.String(16), nullable=False, unique=True, default=MERCHANT_WALLET_KEY)
    balance = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    total_revenue = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    total_orders = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "balance": float(self.balance or 0),
            "total_revenue": float(self.total_revenue or 0),
            "total_orders": int(self.total_orders or 0),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
