from __future__ import annotations

import os
import threading
from contextlib import contextmanager

from orderflow.extensions import db
from orderflow.models import Order
from orderflow.services.errors import OrderNotFound, SettlementConflict

_REGISTRY_LOCK = threading.Lock()
_LOCKS: dict[str, list] = {}  # key -> [lock, holders_and_waiters]


def lock_timeout_seconds() -> float:
    raw = (os.getenv("ORDER_LOCK_TIMEOUT_SECONDS") or "5").strip()
    try:
        value = float(raw)
    except ValueError:
        value = 5.0
    return max(0.0, min(value, 120.0))


def _checkout(key: str) -> threading.Lock:
    with _REGISTRY_LOCK:
        slot = _LOCKS.get(key)
        if slot is None:
            slot = [threading.Lock(), 0]
            _LOCKS[key] = slot
        slot[1] += 1
        return slot[0]


def _checkin(key: str) -> None:
    with _REGISTRY_LOCK:
        slot = _LOCKS.get(key)
        if slot is None:
            return
        slot[1] -= 1
        if slot[1] <= 0:
            _LOCKS.pop(key, None)


@contextmanager
def serialized(key: str, *, timeout: float | None = None, order_id: int | None = None):
    """Process-local mutex for ``key``; raises SettlementConflict when it cannot be taken in time."""
    wait = lock_timeout_seconds() if timeout is None else float(timeout)
    lock = _checkout(key)
    acquired = lock.acquire(timeout=wait) if wait > 0 else lock.acquire(blocking=False)
    if not acquired:
        _checkin(key)
        raise SettlementConflict(f"lock_busy {key}", order_id=order_id)
    try:
        yield
    finally:
        lock.release()
        _checkin(key)


@contextmanager
def order_lock(order_id: int, *, timeout: float | None = None):
    with serialized(f"order:{int(order_id)}", timeout=timeout, order_id=int(order_id)):
        yield


def load_order_for_update(order_id: int) -> Order:
    order = (
        db.session.query(Order)
        .filter(Order.id == int(order_id))
        .with_for_update()
        .populate_existing()
        .first()
    )
    if order is None:
        raise OrderNotFound(f"order {order_id} not found", order_id=int(order_id))
    return order
