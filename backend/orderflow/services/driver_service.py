from __future__ import annotations

from datetime import datetime

from orderflow.extensions import db
from orderflow.models import Driver, Order

# An order in any of these no longer ties its driver up.
_RELEASED_STATUSES = ("completed", "cancelled", "pos_order")


def driver_has_other_active_orders(driver_id: int, *, exclude_order_id: int | None = None) -> bool:
    q = Order.query.filter(Order.driver_id == int(driver_id)).filter(Order.status.notin_(_RELEASED_STATUSES))
    if exclude_order_id is not None:
        q = q.filter(Order.id != int(exclude_order_id))
    return q.first() is not None


def mark_on_delivery(driver_id: int | None) -> Driver | None:
    if driver_id is None:
        return None
    driver = db.session.get(Driver, int(driver_id))
    if driver is None:
        return None
    driver.status = "on_delivery"
    driver.last_activity_at = datetime.utcnow()
    db.session.add(driver)
    return driver


def release_driver_if_idle(driver_id: int | None, *, finished_order_id: int | None = None) -> bool:
    """Set the driver back to ``active`` when no other order still needs them."""
    if driver_id is None:
        return False
    driver = db.session.get(Driver, int(driver_id))
    if driver is None:
        return False
    driver.last_activity_at = datetime.utcnow()
    db.session.add(driver)
    if driver_has_other_active_orders(int(driver_id), exclude_order_id=finished_order_id):
        return False
    driver.status = "active"
    return True
