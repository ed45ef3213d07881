from __future__ import annotations

import json
import time
from datetime import datetime

from celery import shared_task
from flask import current_app

from orderflow.services.errors import OrderNotFound, SettlementConflict


def _task_log(task_name: str, *, status: str, started_at: float, trace_id: str = "", **extra):
    duration_ms = int(max(0.0, (time.perf_counter() - float(started_at))) * 1000.0)
    payload = {
        "task_name": task_name,
        "status": status,
        "duration_ms": duration_ms,
        "trace_id": str(trace_id or ""),
        "timestamp": datetime.utcnow().isoformat(),
    }
    payload.update(extra or {})
    current_app.logger.info(json.dumps(payload, default=str))


def _retry_countdown(retries: int) -> int:
    # Exponential backoff with cap.
    return int(min(900, max(5, 5 * (2 ** int(max(0, retries))))))


def _retry_or_raise(task, task_name: str, exc: Exception, *, started: float, trace_id: str, **extra):
    if int(task.request.retries or 0) < int(task.max_retries or 0):
        countdown = _retry_countdown(int(task.request.retries or 0))
        _task_log(task_name, status="retrying", started_at=started, trace_id=trace_id, detail=str(exc), countdown=countdown, **extra)
        raise task.retry(exc=exc, countdown=countdown)
    _task_log(task_name, status="failed", started_at=started, trace_id=trace_id, detail=str(exc), **extra)
    raise exc


@shared_task(bind=True, name="orderflow.tasks.order_tasks.process_mpesa_callback", max_retries=5)
def process_mpesa_callback_task(self, *, payload: dict, trace_id: str = ""):
    started = time.perf_counter()
    from orderflow.services.payment_reconciliation import apply_push_callback

    try:
        result = apply_push_callback(payload or {})
    except SettlementConflict as exc:
        _retry_or_raise(self, "process_mpesa_callback", exc, started=started, trace_id=trace_id)
    _task_log(
        "process_mpesa_callback",
        status="ok" if result.get("ok") else "rejected",
        started_at=started,
        trace_id=trace_id,
        order_id=result.get("order_id"),
    )
    return result


@shared_task(bind=True, name="orderflow.tasks.order_tasks.process_b2c_callback", max_retries=5)
def process_b2c_callback_task(self, *, payload: dict, trace_id: str = ""):
    started = time.perf_counter()
    from orderflow.services.withdrawal_service import apply_b2c_callback

    try:
        result = apply_b2c_callback(payload or {})
    except SettlementConflict as exc:
        _retry_or_raise(self, "process_b2c_callback", exc, started=started, trace_id=trace_id)
    _task_log(
        "process_b2c_callback",
        status="ok" if result.get("ok") else "rejected",
        started_at=started,
        trace_id=trace_id,
        transaction_id=result.get("transaction_id"),
    )
    return result


@shared_task(bind=True, name="orderflow.tasks.order_tasks.decrease_inventory", max_retries=5)
def decrease_inventory_task(self, *, order_id: int, trace_id: str = ""):
    started = time.perf_counter()
    from orderflow.services.inventory_service import decrease_inventory_for_order

    try:
        result = decrease_inventory_for_order(int(order_id))
    except OrderNotFound as exc:
        _task_log("decrease_inventory", status="failed", started_at=started, trace_id=trace_id, order_id=order_id, detail=str(exc))
        return {"ok": False, "order_id": int(order_id), "error": exc.code}
    except Exception as exc:
        _retry_or_raise(self, "decrease_inventory", exc, started=started, trace_id=trace_id, order_id=order_id)
    _task_log("decrease_inventory", status="ok", started_at=started, trace_id=trace_id, order_id=order_id, skipped=result.get("skipped"))
    return {"ok": True, **result}


@shared_task(bind=True, name="orderflow.tasks.order_tasks.poll_pending_push_payments", max_retries=5)
def poll_pending_push_payments(self, *, trace_id: str = ""):
    started = time.perf_counter()
    from orderflow.jobs.payment_jobs import run_push_poll

    try:
        result = run_push_poll()
    except Exception as exc:
        _retry_or_raise(self, "poll_pending_push_payments", exc, started=started, trace_id=trace_id)
    _task_log(
        "poll_pending_push_payments",
        status="ok",
        started_at=started,
        trace_id=trace_id,
        checked=result.get("checked"),
        resolved=result.get("resolved"),
    )
    return result


@shared_task(bind=True, name="orderflow.tasks.order_tasks.reconcile_ledger", max_retries=5)
def reconcile_ledger(self, *, trace_id: str = ""):
    started = time.perf_counter()
    from orderflow.jobs.payment_jobs import run_ledger_reconciliation

    try:
        summary = run_ledger_reconciliation()
    except Exception as exc:
        _retry_or_raise(self, "reconcile_ledger", exc, started=started, trace_id=trace_id)
    _task_log(
        "reconcile_ledger",
        status="ok" if not summary.get("drift_count") else "drift",
        started_at=started,
        trace_id=trace_id,
        drift_count=summary.get("drift_count"),
    )
    return {"ok": True, "drift_count": int(summary.get("drift_count") or 0), "report_id": summary.get("report_id")}
