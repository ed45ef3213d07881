"""Best-effort work that follows a committed order change.

Nothing here may raise into the caller: the financial unit of work has
already committed by the time these run.
"""

from __future__ import annotations

import os

from flask import current_app

from orderflow.utils.broadcast import broadcast_admin_event, broadcast_order_update
from orderflow.utils.events import log_event
from orderflow.utils.observability import get_request_id


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in ("1", "true", "yes", "on")


def publish_order_update(order, *, old_status: str | None = None, event: str = "order-status-updated") -> None:
    try:
        broadcast_order_update(order, old_status=old_status, event=event)
    except Exception:
        current_app.logger.exception("order_broadcast_failed order_id=%s event=%s", getattr(order, "id", None), event)


def publish_admin_event(event: str, payload: dict) -> None:
    try:
        broadcast_admin_event(event, payload)
    except Exception:
        current_app.logger.exception("admin_broadcast_failed event=%s", event)


def after_transition(order, *, old_status: str, actor, steps: list[str]) -> None:
    log_event(
        "order_status_changed",
        actor=actor,
        order_id=int(order.id),
        subject_type="order",
        subject_id=int(order.id),
        metadata={"from": old_status, "to": order.status, "steps": steps},
    )
    publish_order_update(order, old_status=old_status)
    if order.status == "completed":
        schedule_inventory_decrement(int(order.id))


def after_settlement(order, result, *, actor) -> None:
    log_event(
        "order_settled",
        actor=actor,
        order_id=int(order.id),
        subject_type="order",
        subject_id=int(order.id),
        idempotency_key=f"order:{int(order.id)}:settled",
        metadata=result.to_dict(),
    )
    publish_order_update(order, old_status=order.status, event="order-settled")


def schedule_inventory_decrement(order_id: int) -> None:
    if _env_bool("INVENTORY_QUEUE", False):
        try:
            from orderflow.tasks.order_tasks import decrease_inventory_task

            decrease_inventory_task.delay(order_id=int(order_id), trace_id=get_request_id())
            return
        except Exception as e:
            current_app.logger.warning("inventory_queue_unavailable order_id=%s err=%s", order_id, e)
    try:
        from orderflow.services.inventory_service import decrease_inventory_for_order

        decrease_inventory_for_order(int(order_id))
    except Exception:
        current_app.logger.exception("inventory_decrement_failed order_id=%s", order_id)
