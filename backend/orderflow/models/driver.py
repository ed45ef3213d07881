from datetime import datetime

from orderflow.extensions import db


class Driver(db.Model):
    __tablename__ = "drivers"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    phone = db.Column(db.String(32), nullable=False, unique=True, index=True)

    status = db.Column(db.String(16), nullable=False, default="offline")  # active | inactive | on_delivery | offline
    last_activity_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    orders = db.relationship("Order", backref="driver", lazy="dynamic")

    def to_dict(self):
        return {
            "id": int(self.id),
            "name": self.name or "",
            "phone": self.phone or "",
            "status": self.status or "offline",
            "last_activity_at": self.last_activity_at.isoformat() if self.last_activity_at else None,
        }
