from datetime import datetime
import json

from orderflow.extensions import db


class Order(db.Model):
    __tablename__ = "orders"

    id = db.Column(db.Integer, primary_key=True)

    customer_name = db.Column(db.String(120), nullable=False, default="")
    customer_phone = db.Column(db.String(32), nullable=True)
    delivery_address = db.Column(db.String(255), nullable=True)
    branch_id = db.Column(db.Integer, nullable=True, index=True)

    # pending | confirmed | preparing | out_for_delivery | delivered | completed | cancelled | pos_order
    status = db.Column(db.String(24), nullable=False, default="pending", index=True)
    payment_status = db.Column(db.String(16), nullable=False, default="pending")  # pending | paid | unpaid
    payment_type = db.Column(db.String(24), nullable=False, default="pay_now")  # pay_now | pay_on_delivery
    payment_method = db.Column(db.String(24), nullable=True)  # card | mobile_money | cash
    payment_confirmed_at = db.Column(db.DateTime, nullable=True)

    total_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    tip_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    is_pos = db.Column(db.Boolean, nullable=False, default=False)

    driver_id = db.Column(db.Integer, db.ForeignKey("drivers.id"), nullable=True, index=True)
    driver_accepted = db.Column(db.Boolean, nullable=True)
    driver_pay_credited = db.Column(db.Boolean, nullable=False, default=False)
    driver_pay_credited_at = db.Column(db.DateTime, nullable=True)
    driver_pay_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    financial_snapshot_json = db.Column(db.Text, nullable=True)
    inventory_decremented_at = db.Column(db.DateTime, nullable=True)

    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    items = db.relationship("OrderItem", backref="order", lazy="select", order_by="OrderItem.id")

    def append_note(self, line: str) -> None:
        line = (line or "").strip()
        if not line:
            return
        self.notes = f"{self.notes}\n{line}" if self.notes else line

    def financial_snapshot(self) -> dict:
        raw = (self.financial_snapshot_json or "").strip()
        if not raw:
            return {}
        try:
            data = json.loads(raw)
            return data if isinstance(data, dict) else {}
        except Exception:
            return {}

    def to_dict(self, *, include_items: bool = True):
        payload = {
            "id": int(self.id),
            "customer_name": self.customer_name or "",
            "customer_phone": self.customer_phone or "",
            "delivery_address": self.delivery_address or "",
            "branch_id": int(self.branch_id) if self.branch_id is not None else None,
            "status": self.status or "pending",
            "payment_status": self.payment_status or "pending",
            "payment_type": self.payment_type or "pay_now",
            "payment_method": self.payment_method or "",
            "payment_confirmed_at": self.payment_confirmed_at.isoformat() if self.payment_confirmed_at else None,
            "total_amount": float(self.total_amount or 0),
            "tip_amount": float(self.tip_amount or 0),
            "is_pos": bool(self.is_pos),
            "driver_id": int(self.driver_id) if self.driver_id is not None else None,
            "driver_accepted": self.driver_accepted,
            "driver_pay_credited": bool(self.driver_pay_credited),
            "driver_pay_credited_at": self.driver_pay_credited_at.isoformat() if self.driver_pay_credited_at else None,
            "driver_pay_amount": float(self.driver_pay_amount or 0),
            "financials": self.financial_snapshot(),
            "notes": self.notes or "",
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_items:
            payload["items"] = [item.to_dict() for item in (self.items or [])]
        return payload
