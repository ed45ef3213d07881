from __future__ import annotations

from datetime import datetime

from flask import current_app

from orderflow.extensions import db
from orderflow.models import Driver, Order, OrderItem, Transaction
from orderflow.services import side_effects
from orderflow.services.actors import Actor
from orderflow.services.errors import InvalidRequest, OrderFlowError, OrderNotFound, Unauthorized
from orderflow.services.ledger_service import TxnStatus, TxnType, entries_for_order, record_entry
from orderflow.services.order_financials import clear_frozen_split, get_or_create_breakdown, get_or_create_split
from orderflow.services.order_locks import load_order_for_update, order_lock
from orderflow.services.wallet_service import credit, get_admin_wallet
from orderflow.utils.events import log_event
from orderflow.utils.money import ZERO, non_negative, to_money

PAYMENT_TYPES = ("pay_now", "pay_on_delivery")
PAYMENT_METHODS = ("card", "mobile_money", "cash")


def parse_items(raw_items) -> list[dict]:
    if not isinstance(raw_items, list) or not raw_items:
        raise InvalidRequest("items must be a non-empty list")
    items = []
    for idx, raw in enumerate(raw_items):
        if not isinstance(raw, dict):
            raise InvalidRequest(f"items[{idx}] must be an object")
        name = str(raw.get("name") or "").strip()
        try:
            quantity = int(raw.get("quantity") if raw.get("quantity") is not None else 1)
        except (TypeError, ValueError):
            raise InvalidRequest(f"items[{idx}].quantity must be an integer")
        price = to_money(raw.get("price"))
        if not name:
            raise InvalidRequest(f"items[{idx}].name is required")
        if quantity <= 0:
            raise InvalidRequest(f"items[{idx}].quantity must be positive")
        if price < ZERO:
            raise InvalidRequest(f"items[{idx}].price cannot be negative")
        items.append(
            {
                "name": name[:160],
                "sku": (str(raw.get("sku") or "").strip()[:64] or None),
                "quantity": quantity,
                "price": price,
            }
        )
    return items


def build_order(
    items: list[dict],
    *,
    delivery_fee=0,
    tip_amount=0,
    payment_type: str = "pay_now",
    payment_method: str | None = None,
    customer_name: str = "",
    customer_phone: str | None = None,
    delivery_address: str | None = None,
    branch_id: int | None = None,
    status: str = "pending",
    is_pos: bool = False,
) -> Order:
    """Add an order and its items to the session and flush; the caller commits."""
    fee = non_negative(delivery_fee)
    tip = non_negative(tip_amount)
    items_total = ZERO
    for item in items:
        items_total += item["price"] * item["quantity"]
    order = Order(
        customer_name=(customer_name or "")[:120],
        customer_phone=(customer_phone or None),
        delivery_address=(delivery_address or None),
        branch_id=branch_id,
        status=status,
        payment_status="pending",
        payment_type=payment_type,
        payment_method=payment_method,
        total_amount=to_money(items_total + fee + tip),
        tip_amount=tip,
        is_pos=bool(is_pos),
        created_at=datetime.utcnow(),
        updated_at=datetime.utcnow(),
    )
    db.session.add(order)
    db.session.flush()
    for item in items:
        db.session.add(OrderItem(order_id=int(order.id), **item))
    db.session.flush()
    db.session.refresh(order)
    get_or_create_breakdown(order)
    return order


def create_order(payload: dict) -> Order:
    payload = payload or {}
    items = parse_items(payload.get("items"))
    payment_type = (payload.get("payment_type") or "pay_now").strip().lower()
    if payment_type not in PAYMENT_TYPES:
        raise InvalidRequest(f"payment_type must be one of {', '.join(PAYMENT_TYPES)}")
    payment_method = (payload.get("payment_method") or "").strip().lower() or None
    if payment_method is not None and payment_method not in PAYMENT_METHODS:
        raise InvalidRequest(f"payment_method must be one of {', '.join(PAYMENT_METHODS)}")
    if to_money(payload.get("delivery_fee")) < ZERO or to_money(payload.get("tip_amount")) < ZERO:
        raise InvalidRequest("delivery_fee and tip_amount cannot be negative")
    branch_id = payload.get("branch_id")
    try:
        branch_id = int(branch_id) if branch_id not in (None, "") else None
    except (TypeError, ValueError):
        raise InvalidRequest("branch_id must be an integer")

    try:
        order = build_order(
            items,
            delivery_fee=payload.get("delivery_fee"),
            tip_amount=payload.get("tip_amount"),
            payment_type=payment_type,
            payment_method=payment_method,
            customer_name=str(payload.get("customer_name") or ""),
            customer_phone=(str(payload.get("customer_phone") or "").strip() or None),
            delivery_address=(str(payload.get("delivery_address") or "").strip() or None),
            branch_id=branch_id,
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    current_app.logger.info("order_created order_id=%s total=%s payment_type=%s", order.id, order.total_amount, order.payment_type)
    side_effects.publish_admin_event("new-order", {"orderId": int(order.id), "order": order.to_dict()})
    return order


def get_order(order_id: int) -> Order:
    order = db.session.get(Order, int(order_id))
    if order is None:
        raise OrderNotFound(f"order {order_id} not found", order_id=int(order_id))
    return order


def order_detail(order_id: int) -> dict:
    order = get_order(order_id)
    payload = order.to_dict()
    payload["transactions"] = [t.to_dict() for t in entries_for_order(int(order.id))]
    return payload


def list_driver_orders(driver_id: int, *, status: str | None = None, limit: int = 100) -> list[Order]:
    q = Order.query.filter(Order.driver_id == int(driver_id))
    if status:
        q = q.filter(Order.status == status)
    return q.order_by(Order.created_at.desc(), Order.id.desc()).limit(int(limit)).all()


def assign_driver(order_id: int, driver_id: int, *, actor: Actor) -> Order:
    if not actor.is_admin:
        raise Unauthorized(f"{actor.label} cannot assign drivers", order_id=int(order_id))
    driver = db.session.get(Driver, int(driver_id))
    if driver is None:
        raise InvalidRequest(f"driver {driver_id} not found", order_id=int(order_id))
    try:
        with order_lock(order_id):
            order = load_order_for_update(order_id)
            if order.is_pos or order.status in ("delivered", "completed", "cancelled"):
                raise InvalidRequest(f"driver can no longer be changed on a {order.status} order", order_id=int(order.id))
            previous = order.driver_id
            order.driver_id = int(driver.id)
            order.driver_accepted = None
            order.updated_at = datetime.utcnow()
            if previous != order.driver_id:
                clear_frozen_split(order)
            db.session.add(order)
            db.session.commit()
    except OrderFlowError:
        db.session.rollback()
        raise
    log_event(
        "order_driver_assigned",
        actor=actor,
        order_id=int(order.id),
        subject_type="order",
        subject_id=int(order.id),
        metadata={"driver_id": int(driver.id), "previous_driver_id": previous},
    )
    side_effects.publish_order_update(order, old_status=order.status, event="order-assigned")
    return order


def respond_to_assignment(order_id: int, *, actor: Actor, accepted) -> Order:
    if not isinstance(accepted, bool):
        raise InvalidRequest("accepted must be a boolean", order_id=int(order_id))
    order = get_order(order_id)
    if not actor.is_driver or order.driver_id is None or actor.id is None or int(order.driver_id) != int(actor.id):
        raise Unauthorized(f"{actor.label} is not assigned to order {order_id}", order_id=int(order_id))
    order.driver_accepted = accepted
    order.updated_at = datetime.utcnow()
    if accepted and order.driver is not None:
        order.driver.last_activity_at = datetime.utcnow()
    db.session.add(order)
    db.session.commit()
    current_app.logger.info("driver_order_response order_id=%s driver_id=%s accepted=%s", order.id, actor.id, accepted)
    side_effects.publish_admin_event(
        "driver-order-response",
        {"orderId": int(order.id), "driverId": int(actor.id), "accepted": accepted, "order": order.to_dict()},
    )
    return order


def _refundable(order: Order):
    breakdown = get_or_create_breakdown(order)
    merchant_share = ZERO if order.is_pos else get_or_create_split(order, breakdown).merchant_share
    refunded = ZERO
    rows = Transaction.query.filter_by(
        order_id=int(order.id), transaction_type=TxnType.REFUND, status=TxnStatus.COMPLETED
    ).all()
    for row in rows:
        refunded += to_money(row.amount)
    return non_negative(breakdown.items_total + merchant_share - refunded)


def record_refund(order_id: int, *, actor: Actor, amount, reason: str = "") -> Transaction:
    """Compensating refund against a settled order. Settlement itself is never undone."""
    if not actor.is_admin:
        raise Unauthorized(f"{actor.label} cannot issue refunds", order_id=int(order_id))
    value = to_money(amount)
    if value <= ZERO:
        raise InvalidRequest("refund amount must be greater than zero", order_id=int(order_id))
    try:
        with order_lock(order_id):
            order = load_order_for_update(order_id)
            if not order.driver_pay_credited:
                raise InvalidRequest(f"order {order.id} has not been settled", order_id=int(order.id))
            limit = _refundable(order)
            if value > limit:
                raise InvalidRequest(f"refund {value} exceeds refundable {limit}", order_id=int(order.id))
            entry = record_entry(
                TxnType.REFUND,
                amount=value,
                order_id=int(order.id),
                status=TxnStatus.COMPLETED,
                payment_status="refunded",
                payment_method=order.payment_method or "system",
                transaction_date=datetime.utcnow(),
                note=f"Refund by {actor.label}: {(reason or 'no reason given')[:200]}",
            )
            credit(get_admin_wallet(), -value, total_revenue=-value)
            db.session.commit()
    except OrderFlowError as e:
        db.session.rollback()
        current_app.logger.warning("order_refund_rejected order_id=%s error=%s msg=%s", order_id, e.code, e)
        raise
    log_event(
        "order_refunded",
        actor=actor,
        order_id=int(order_id),
        subject_type="transaction",
        subject_id=int(entry.id),
        metadata={"amount": value, "reason": reason or ""},
    )
    return entry
