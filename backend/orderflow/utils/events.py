from __future__ import annotations

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from orderflow.extensions import db
from orderflow.models import PlatformEvent
from orderflow.utils.observability import get_request_id


def _safe_value(value: Any):
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _safe_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_safe_value(v) for v in value]
    return str(value)


def log_event(
    event_type: str,
    *,
    actor=None,
    order_id: int | None = None,
    subject_type: str | None = None,
    subject_id: int | str | None = None,
    severity: str = "INFO",
    idempotency_key: str | None = None,
    metadata: dict | None = None,
    commit: bool = True,
) -> PlatformEvent | None:
    """Best-effort audit event writer.

    Runs in a savepoint so a failed insert never rolls back the caller's unit
    of work. Returns the existing row when ``idempotency_key`` was already used.
    """
    key = (idempotency_key or "").strip()[:180] or None
    try:
        if key:
            existing = PlatformEvent.query.filter_by(idempotency_key=key).first()
            if existing:
                return existing
        event = PlatformEvent(
            event_type=(event_type or "unknown").strip()[:80],
            actor_type=(getattr(actor, "type", None) or "system")[:32],
            actor_id=getattr(actor, "id", None),
            order_id=int(order_id) if order_id is not None else None,
            subject_type=(subject_type or "").strip()[:80] or None,
            subject_id=str(subject_id)[:120] if subject_id is not None else None,
            request_id=(get_request_id() or "")[:80] or None,
            idempotency_key=key,
            severity=(severity or "INFO").strip().upper()[:16] or "INFO",
            metadata_json=json.dumps(_safe_value(metadata or {}), separators=(",", ":"), ensure_ascii=False),
        )
        with db.session.begin_nested():
            db.session.add(event)
        if commit:
            db.session.commit()
        return event
    except SQLAlchemyError as e:
        current_app.logger.warning("platform_event_write_failed type=%s order_id=%s err=%s", event_type, order_id, e)
        if commit:
            db.session.rollback()
        return None
