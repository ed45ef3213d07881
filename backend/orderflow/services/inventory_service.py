from __future__ import annotations

from datetime import datetime

from flask import current_app

from orderflow.extensions import db
from orderflow.models import Order, StockLevel
from orderflow.services.errors import OrderNotFound
from orderflow.services.order_locks import serialized


def decrease_inventory_for_order(order_id: int) -> dict:
    """Take a completed order's items out of stock, at most once per order."""
    with serialized(f"inventory:{int(order_id)}", order_id=int(order_id)):
        order = db.session.query(Order).filter(Order.id == int(order_id)).with_for_update().populate_existing().first()
        if order is None:
            raise OrderNotFound(f"order {order_id} not found", order_id=int(order_id))
        if order.inventory_decremented_at is not None:
            return {"order_id": int(order_id), "skipped": True, "reason": "already_decremented"}
        if order.status != "completed":
            return {"order_id": int(order_id), "skipped": True, "reason": f"status_{order.status}"}

        touched = []
        missing = []
        try:
            for item in order.items or []:
                sku = (item.sku or "").strip()
                if not sku:
                    continue
                stock = (
                    db.session.query(StockLevel)
                    .filter(StockLevel.sku == sku)
                    .with_for_update()
                    .first()
                )
                if stock is None:
                    missing.append(sku)
                    continue
                stock.quantity = max(int(stock.quantity or 0) - int(item.quantity or 0), 0)
                db.session.add(stock)
                touched.append({"sku": sku, "quantity": int(stock.quantity)})
            order.inventory_decremented_at = datetime.utcnow()
            db.session.add(order)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

    if missing:
        current_app.logger.info("inventory_unknown_skus order_id=%s skus=%s", order_id, ",".join(missing))
    return {"order_id": int(order_id), "skipped": False, "updated": touched, "unknown_skus": missing}
