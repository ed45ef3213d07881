"""Realtime fan-out of order updates over Redis pub/sub.

Socket gateways subscribe to ``order-<id>``, ``driver-<id>`` and ``admin``.
Publishing is fire-and-forget: with broadcasting disabled, Redis unreachable,
or no subscribers, callers still succeed.
"""

from __future__ import annotations

import json
import os
import threading
from datetime import datetime
from typing import Any

import redis
from flask import current_app

ADMIN_CHANNEL = "admin"

_LOCK = threading.Lock()
_CLIENT = None
_CLIENT_INIT_ATTEMPTED = False

_STATS = {
    "published": 0,
    "skipped": 0,
    "errors": 0,
}


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in ("1", "true", "yes", "on")


def broadcast_enabled() -> bool:
    return _env_bool("ENABLE_BROADCAST", False)


def _broadcast_redis_url() -> str:
    return (os.getenv("BROADCAST_REDIS_URL") or os.getenv("REDIS_URL") or "").strip()


def _bump_stat(name: str, delta: int = 1) -> None:
    with _LOCK:
        _STATS[name] = int(_STATS.get(name, 0) or 0) + int(delta)


def broadcast_stats() -> dict:
    with _LOCK:
        return dict(_STATS)


def reset_client() -> None:
    global _CLIENT, _CLIENT_INIT_ATTEMPTED
    with _LOCK:
        _CLIENT = None
        _CLIENT_INIT_ATTEMPTED = False


def _get_client():
    global _CLIENT, _CLIENT_INIT_ATTEMPTED
    if not broadcast_enabled():
        return None
    with _LOCK:
        if _CLIENT_INIT_ATTEMPTED:
            return _CLIENT
        _CLIENT_INIT_ATTEMPTED = True
    url = _broadcast_redis_url()
    if not url:
        return None
    try:
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=0.75,
            socket_connect_timeout=0.75,
            health_check_interval=30,
        )
        client.ping()
        with _LOCK:
            _CLIENT = client
        return client
    except redis.RedisError as e:
        _bump_stat("errors")
        current_app.logger.warning("broadcast_redis_unavailable err=%s", e)
        return None


def order_channels(order_id: int, driver_id: int | None) -> list[str]:
    channels = [f"order-{int(order_id)}"]
    if driver_id is not None:
        channels.append(f"driver-{int(driver_id)}")
    channels.append(ADMIN_CHANNEL)
    return channels


def publish(channels: list[str], event: str, payload: dict[str, Any]) -> int:
    """Publish ``payload`` to every channel. Returns the number of channels reached."""
    client = _get_client()
    if client is None:
        _bump_stat("skipped")
        return 0
    message = json.dumps(
        {"event": event, "ts": datetime.utcnow().isoformat(), "data": payload},
        separators=(",", ":"),
        default=str,
    )
    reached = 0
    for channel in channels:
        try:
            client.publish(channel, message)
            reached += 1
        except redis.RedisError as e:
            _bump_stat("errors")
            current_app.logger.warning("broadcast_publish_failed channel=%s event=%s err=%s", channel, event, e)
    if reached:
        _bump_stat("published", reached)
    return reached


def broadcast_order_update(order, *, old_status: str | None = None, event: str = "order-status-updated") -> int:
    payload = {
        "order_id": int(order.id),
        "status": order.status,
        "old_status": old_status,
        "payment_status": order.payment_status,
        "order": order.to_dict(),
    }
    return publish(order_channels(int(order.id), order.driver_id), event, payload)


def broadcast_admin_event(event: str, payload: dict[str, Any]) -> int:
    return publish([ADMIN_CHANNEL], event, payload)
