from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime

from flask import current_app

from orderflow.extensions import db
from orderflow.models import Order, OrderTransition
from orderflow.services import side_effects
from orderflow.services.actors import SYSTEM, Actor
from orderflow.services.driver_service import mark_on_delivery, release_driver_if_idle
from orderflow.services.errors import (
    InvalidRequest,
    InvalidTransition,
    OrderFlowError,
    PaymentNotConfirmed,
    Unauthorized,
)
from orderflow.services.order_locks import load_order_for_update, order_lock
from orderflow.services.settlement_service import SettlementResult, apply_settlement


class OrderStatus:
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    POS_ORDER = "pos_order"

    FLOW = (PENDING, CONFIRMED, PREPARING, OUT_FOR_DELIVERY, DELIVERED, COMPLETED)
    ALL = set(FLOW) | {CANCELLED, POS_ORDER}
    TERMINAL = {COMPLETED, CANCELLED}
    CANCELLABLE = {PENDING, CONFIRMED, PREPARING, OUT_FOR_DELIVERY}
    DRIVER_TARGETS = {OUT_FOR_DELIVERY, DELIVERED, COMPLETED}


@dataclass
class TransitionOutcome:
    order: Order
    from_status: str
    to_status: str
    steps: list[str] = field(default_factory=list)
    settlement: SettlementResult | None = None
    replayed: bool = False

    def to_dict(self) -> dict:
        return {
            "order": self.order.to_dict(),
            "from_status": self.from_status,
            "status": self.to_status,
            "steps": list(self.steps),
            "settlement": self.settlement.to_dict() if self.settlement else None,
            "replayed": bool(self.replayed),
        }


def normalize_status(value: str | None) -> str:
    status = (value or "").strip().lower()
    if status not in OrderStatus.ALL:
        raise InvalidRequest(f"unknown order status '{value}'")
    return status


def check_transition(current: str, target: str, *, order_id: int | None = None) -> None:
    """Raise InvalidTransition unless ``current -> target`` is a legal single step."""

    def reject(reason: str):
        raise InvalidTransition(current, target, order_id=order_id, reason=reason)

    if current == target:
        reject("order is already in that status")
    if current == OrderStatus.CANCELLED:
        reject("cancelled orders are final")
    if target == OrderStatus.CANCELLED:
        if current in OrderStatus.CANCELLABLE:
            return
        reject("order can no longer be cancelled")
    if current == OrderStatus.POS_ORDER:
        if target == OrderStatus.COMPLETED:
            return
        reject("point-of-sale orders can only be completed")
    if target == OrderStatus.POS_ORDER:
        reject("pos_order is only set at point-of-sale checkout")
    if target == OrderStatus.COMPLETED:
        if current == OrderStatus.DELIVERED:
            return
        reject("orders can only be completed once delivered")
    current_idx = OrderStatus.FLOW.index(current)
    target_idx = OrderStatus.FLOW.index(target)
    if target_idx < current_idx:
        reject("status cannot move backward")
    if target_idx != current_idx + 1:
        reject(f"order must be {OrderStatus.FLOW[target_idx - 1]} first")


def _authorize(order: Order, target: str, actor: Actor) -> None:
    if actor.is_driver:
        if order.driver_id is None or actor.id is None or int(order.driver_id) != int(actor.id):
            raise Unauthorized(f"driver {actor.id} is not assigned to order {order.id}", order_id=int(order.id))
        if target not in OrderStatus.DRIVER_TARGETS:
            raise InvalidTransition(
                order.status,
                target,
                order_id=int(order.id),
                reason=f"only an admin can set {target}",
            )
        return
    if actor.is_pos:
        if order.status == OrderStatus.POS_ORDER and target == OrderStatus.COMPLETED:
            return
        raise Unauthorized("point-of-sale terminals can only complete point-of-sale orders", order_id=int(order.id))
    if actor.is_admin or actor.type == "system":
        return
    raise Unauthorized(f"{actor.label} cannot change order status", order_id=int(order.id))


def _authorize_replay(order: Order, actor: Actor) -> None:
    # The order may have moved on since the original request, so only ownership is rechecked.
    if actor.is_driver:
        if order.driver_id is None or actor.id is None or int(order.driver_id) != int(actor.id):
            raise Unauthorized(f"driver {actor.id} is not assigned to order {order.id}", order_id=int(order.id))
        return
    if actor.is_pos and not order.is_pos:
        raise Unauthorized("point-of-sale terminals can only complete point-of-sale orders", order_id=int(order.id))
    if not (actor.is_admin or actor.is_pos or actor.type == "system"):
        raise Unauthorized(f"{actor.label} cannot change order status", order_id=int(order.id))


def _record_step(order: Order, target: str, *, actor: Actor, key: str, reason: str, metadata: dict | None = None) -> OrderTransition:
    row = OrderTransition(
        order_id=int(order.id),
        from_status=order.status,
        to_status=target,
        actor_type=(actor.type or "system")[:32],
        actor_id=actor.id,
        idempotency_key=key[:160],
        reason=(reason or "")[:240],
        metadata_json=json.dumps(metadata or {})[:4000],
        created_at=datetime.utcnow(),
    )
    order.status = target
    order.updated_at = datetime.utcnow()
    db.session.add(row)
    db.session.add(order)
    return row


def apply_transition(
    order: Order,
    to_status: str,
    *,
    actor: Actor = SYSTEM,
    idempotency_key: str | None = None,
    reason: str = "",
) -> TransitionOutcome:
    """Validate and apply a status change on a locked order without committing.

    Marking a paid order ``delivered`` collapses straight into ``completed``;
    reaching ``completed`` settles the order inside the same unit of work.
    """
    target = normalize_status(to_status)
    current = order.status
    key = (idempotency_key or "").strip()
    if key:
        _authorize_replay(order, actor)
        existing = OrderTransition.query.filter_by(order_id=int(order.id), idempotency_key=key[:160]).first()
        if existing:
            same_caller = existing.actor_type == actor.type and existing.actor_id == actor.id
            if existing.to_status != target or not same_caller:
                raise InvalidRequest(
                    f"idempotency key '{key[:160]}' belongs to another transition of order {order.id}",
                    order_id=int(order.id),
                )
            return TransitionOutcome(order=order, from_status=existing.from_status, to_status=order.status, replayed=True)

    _authorize(order, target, actor)
    check_transition(current, target, order_id=int(order.id))
    if (
        target == OrderStatus.DELIVERED
        and order.payment_type == "pay_on_delivery"
        and order.payment_status != "paid"
    ):
        raise PaymentNotConfirmed(
            f"order {order.id} cannot be marked delivered until payment is confirmed as paid",
            order_id=int(order.id),
        )

    base_key = key or f"order:{order.id}:{current}->{target}"
    steps = [target]
    _record_step(order, target, actor=actor, key=base_key, reason=reason)
    if target == OrderStatus.DELIVERED and order.payment_status == "paid":
        _record_step(
            order,
            OrderStatus.COMPLETED,
            actor=actor,
            key=f"{base_key}:auto-complete",
            reason="delivered with payment already confirmed",
        )
        steps.append(OrderStatus.COMPLETED)

    if order.status == OrderStatus.OUT_FOR_DELIVERY:
        mark_on_delivery(order.driver_id)
    elif order.status in (OrderStatus.DELIVERED, OrderStatus.COMPLETED, OrderStatus.CANCELLED):
        release_driver_if_idle(order.driver_id, finished_order_id=int(order.id))

    settlement = None
    if order.status == OrderStatus.COMPLETED:
        settlement = apply_settlement(order, actor=actor)
    db.session.flush()
    return TransitionOutcome(order=order, from_status=current, to_status=order.status, steps=steps, settlement=settlement)


def run_after_commit(outcome: TransitionOutcome, *, actor: Actor) -> None:
    if outcome.replayed or not outcome.steps:
        return
    side_effects.after_transition(outcome.order, old_status=outcome.from_status, actor=actor, steps=outcome.steps)
    if outcome.settlement is not None and outcome.settlement.settled:
        side_effects.after_settlement(outcome.order, outcome.settlement, actor=actor)


def advance_status(
    order_id: int,
    to_status: str,
    *,
    actor: Actor = SYSTEM,
    idempotency_key: str | None = None,
    reason: str = "",
) -> TransitionOutcome:
    try:
        with order_lock(order_id):
            order = load_order_for_update(order_id)
            outcome = apply_transition(order, to_status, actor=actor, idempotency_key=idempotency_key, reason=reason)
            db.session.commit()
    except OrderFlowError as e:
        db.session.rollback()
        current_app.logger.warning(
            "order_transition_rejected order_id=%s from=%s to=%s actor=%s error=%s msg=%s",
            order_id,
            getattr(e, "current", None),
            to_status,
            actor.label,
            e.code,
            e,
        )
        raise
    except Exception:
        db.session.rollback()
        current_app.logger.exception("order_transition_failed order_id=%s to=%s actor=%s", order_id, to_status, actor.label)
        raise
    run_after_commit(outcome, actor=actor)
    return outcome


def is_terminal(order: Order | None) -> bool:
    if not order:
        return False
    return (order.status or "") in OrderStatus.TERMINAL
