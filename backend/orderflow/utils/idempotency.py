from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Any

from flask import has_request_context, request
from sqlalchemy.exc import IntegrityError

from orderflow.extensions import db
from orderflow.models import IdempotencyKey


def _canonical_json(payload: Any) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def _hash_request(*, scope: str, payload: Any) -> str:
    method = str(request.method or "POST").upper() if has_request_context() else "POST"
    raw = f"{method}|{scope.strip()}|{_canonical_json(payload)}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


def get_idempotency_key() -> str | None:
    if not has_request_context():
        return None
    k = request.headers.get("Idempotency-Key") or request.headers.get("X-Idempotency-Key")
    if not k:
        return None
    return k.strip()[:128] or None


def lookup_response(scope: str, payload: Any, *, actor_id: int | None = None, idempotency_key: str | None = None):
    """Reserve an idempotency key for ``scope``.

    Returns ``None`` when no key was supplied, ``("hit", body, status)`` for a
    replay, ``("conflict", body, 409)`` when the key was used with another
    payload, and ``("miss", row, 0)`` when the caller should process and then
    call ``store_response``.
    """
    k = (idempotency_key or get_idempotency_key() or "").strip()[:128]
    if not k:
        return None
    req_hash = _hash_request(scope=scope, payload=payload)
    row = IdempotencyKey.query.filter_by(scope=scope, key=k).first()
    if row:
        if (row.request_hash or "") != req_hash:
            return (
                "conflict",
                {
                    "ok": False,
                    "error": "IDEMPOTENCY_KEY_REUSE",
                    "message": "This Idempotency-Key was already used with a different request payload.",
                },
                409,
            )
        if row.response_json:
            return ("hit", json.loads(row.response_json), int(row.status_code or 200))
        return (
            "conflict",
            {"ok": False, "error": "IDEMPOTENCY_IN_PROGRESS", "message": "A request with this key is still in progress."},
            409,
        )

    row = IdempotencyKey(
        key=k,
        scope=scope,
        actor_id=int(actor_id) if actor_id is not None else None,
        request_hash=req_hash,
        status_code=200,
        created_at=datetime.utcnow(),
        updated_at=datetime.utcnow(),
    )
    try:
        db.session.add(row)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return lookup_response(scope, payload, actor_id=actor_id, idempotency_key=k)
    return ("miss", row, 0)


def store_response(row: IdempotencyKey, response_json: Any, status_code: int) -> None:
    row.response_json = json.dumps(response_json, separators=(",", ":"), default=str)
    row.status_code = int(status_code or 200)
    row.updated_at = datetime.utcnow()
    db.session.add(row)
    db.session.commit()


def release_key(row: IdempotencyKey) -> None:
    """Drop a reservation whose request failed so the client can retry with the same key."""
    db.session.delete(row)
    db.session.commit()
