from __future__ import annotations

import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

EXPECTED_TASKS = (
    "orderflow.tasks.order_tasks.process_mpesa_callback",
    "orderflow.tasks.order_tasks.process_b2c_callback",
    "orderflow.tasks.order_tasks.decrease_inventory",
    "orderflow.tasks.order_tasks.poll_pending_push_payments",
    "orderflow.tasks.order_tasks.reconcile_ledger",
)


def main() -> int:
    try:
        from celery_app import celery

        import orderflow.tasks.order_tasks  # noqa: F401

        registered = set(celery.tasks.keys())
        missing = [name for name in EXPECTED_TASKS if name not in registered]
        scheduled = {entry["task"] for entry in (celery.conf.beat_schedule or {}).values()}
        unscheduled = [name for name in scheduled if name not in registered]
    except Exception as exc:
        print(f"error: failed to load celery_app:celery -> {exc}", file=sys.stderr)
        return 1
    if missing or unscheduled:
        print(f"error: unregistered tasks missing={missing} beat={unscheduled}", file=sys.stderr)
        return 1
    print(f"ok: {len(EXPECTED_TASKS)} order tasks registered, {len(scheduled)} beat entries")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
