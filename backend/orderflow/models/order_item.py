from datetime import datetime

from orderflow.extensions import db


class OrderItem(db.Model):
    __tablename__ = "order_items"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)

    sku = db.Column(db.String(64), nullable=True, index=True)
    name = db.Column(db.String(160), nullable=False, default="")
    quantity = db.Column(db.Integer, nullable=False, default=1)
    price = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "order_id": int(self.order_id),
            "sku": self.sku or "",
            "name": self.name or "",
            "quantity": int(self.quantity or 0),
            "price": float(self.price or 0),
        }
