from __future__ import annotations

import os
from datetime import datetime

from flask import current_app

from orderflow.services.payment_reconciliation import poll_pending_pushes
from orderflow.services.reconciliation_service import persist_report, recompute_wallet_balances
from orderflow.utils.job_runs import record_job_run


def _int_env(name: str, default: int, *, minimum: int = 0) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        value = int(raw) if raw else int(default)
    except ValueError:
        value = int(default)
    return max(minimum, value)


def run_push_poll(*, limit: int = 50) -> dict:
    """Resolve stale pending STK pushes by querying the gateway."""
    started = datetime.utcnow()
    try:
        result = poll_pending_pushes(min_age_seconds=_int_env("PUSH_POLL_MIN_AGE_SECONDS", 120), limit=limit)
    except Exception as e:
        record_job_run(job_name="push_poll", ok=False, started_at=started, error=str(e))
        raise
    record_job_run(job_name="push_poll", ok=True, started_at=started, processed=int(result.get("resolved") or 0))
    return {"ok": True, **result}


def run_ledger_reconciliation(*, persist: bool = True) -> dict:
    started = datetime.utcnow()
    try:
        summary = recompute_wallet_balances()
        if persist:
            report = persist_report(summary, created_by=None)
            summary["report_id"] = int(report.id)
    except Exception as e:
        record_job_run(job_name="ledger_reconciliation", ok=False, started_at=started, error=str(e))
        raise
    drift = int(summary.get("drift_count") or 0)
    if drift:
        current_app.logger.warning("ledger_drift_detected drift_count=%s items=%s", drift, summary.get("drift_items"))
    record_job_run(
        job_name="ledger_reconciliation",
        ok=drift == 0,
        started_at=started,
        processed=int(summary.get("wallet_count") or 0),
        error=f"drift_count={drift}" if drift else None,
    )
    return summary
