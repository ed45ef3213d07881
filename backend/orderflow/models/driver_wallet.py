from datetime import datetime

from orderflow.extensions import db


class DriverWallet(db.Model):
    __tablename__ = "driver_wallets"

    id = db.Column(db.Integer, primary_key=True)
    driver_id = db.Column(db.Integer, db.ForeignKey("drivers.id"), nullable=False, unique=True, index=True)

    balance = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total_tips_received = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total_tips_count = db.Column(db.Integer, nullable=False, default=0)
    total_delivery_pay = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    total_delivery_pay_count = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "driver_id": int(self.driver_id),
            "balance": float(self.balance or 0),
            "total_tips_received": float(self.total_tips_received or 0),
            "total_tips_count": int(self.total_tips_count or 0),
            "total_delivery_pay": float(self.total_delivery_pay or 0),
            "total_delivery_pay_count": int(self.total_delivery_pay_count or 0),
        }
