from __future__ import annotations

from flask import g, jsonify, request

from orderflow.services.actors import Actor
from orderflow.utils.jwt_utils import ROLES, decode_token, get_bearer_token
from orderflow.utils.observability import get_request_id


def current_actor() -> Actor | None:
    """Resolve the bearer token into an Actor, caching it on ``g`` for the request log."""
    if "actor" in g:
        return g.actor
    actor = None
    token = get_bearer_token(request.headers.get("Authorization", ""))
    payload = decode_token(token) if token else None
    if payload:
        role = str(payload.get("role") or "").strip().lower()
        try:
            actor_id = int(payload.get("sub"))
        except (TypeError, ValueError):
            actor_id = None
        if role in ROLES and actor_id is not None:
            actor = Actor(role, actor_id)
    g.actor = actor
    return actor


def _denied(error: str, message: str, status: int):
    body = {"ok": False, "error": error, "message": message, "status": status}
    rid = get_request_id()
    if rid:
        body["trace_id"] = rid
    return jsonify(body), status


def require_roles(*roles: str):
    """Return ``(actor, None)`` or ``(None, error_response)`` for the current request."""
    actor = current_actor()
    if actor is None:
        return None, _denied("UNAUTHENTICATED", "Bearer token required", 401)
    if roles and actor.type not in roles:
        return None, _denied("FORBIDDEN", f"{actor.type} role cannot use this endpoint", 403)
    return actor, None
