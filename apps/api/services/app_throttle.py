"""
Per-App connector concurrency cap.

Caps in-flight connector calls against one App across all workers with a Redis
sorted set per App: one member per slot holder, scored by the holder's expiry.
A holder that dies without releasing drops out once its own expiry passes, so
a dead worker never frees (or blocks) a slot that someone else holds.
If Redis is unavailable we degrade gracefully (no throttle).
"""

from contextlib import contextmanager
from typing import Iterator, Optional
import logging
import time
import uuid

from core.cache import cache_key, get_redis_client
from core.config import settings
from models import App
from services.connectors import ConnectorRegistry, has_method

logger = logging.getLogger(__name__)

# Token handed out when Redis is unavailable; releasing it is a no-op.
UNTHROTTLED = "unthrottled"

# Lua: drop expired holders, enforce limit, add this holder, refresh key expiry.
ACQUIRE_LUA = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local limit = tonumber(ARGV[2])
local token = ARGV[3]
local expires_at = tonumber(ARGV[4])
local ttl = tonumber(ARGV[5])
redis.call('ZREMRANGEBYSCORE', key, '-inf', now)
if redis.call('ZCARD', key) >= limit then
  return 0
end
redis.call('ZADD', key, expires_at, token)
redis.call('EXPIRE', key, ttl)
return 1
"""


def _now() -> float:
    return time.time()


def slot_key(app_id: str) -> str:
    return cache_key("throttle", "app", app_id, "holders")


def app_parallelism(registry: ConnectorRegistry, app: App) -> int:
    """The connector's `parallelism(app_options)` if it has one, else the default."""
    try:
        connector = registry.get_app(app.type)
    except Exception as e:
        logger.warning(f"Cannot resolve connector for app {app.id}: {e}")
        return settings.APP_PARALLELISM_DEFAULT
    if has_method(connector, "parallelism"):
        return max(1, int(connector.parallelism(app_options=app.options)))
    return settings.APP_PARALLELISM_DEFAULT


def acquire_app_slot(
    app_id: str, limit: int, timeout_s: Optional[float] = None, poll_s: Optional[float] = None
) -> Optional[str]:
    """Returns the holder token, or None when no slot freed up within `timeout_s`."""
    client = get_redis_client()
    if not client:
        return UNTHROTTLED

    timeout_s = settings.APP_SLOT_ACQUIRE_TIMEOUT_S if timeout_s is None else timeout_s
    poll_s = settings.APP_SLOT_ACQUIRE_POLL_S if poll_s is None else poll_s
    key = slot_key(app_id)
    token = uuid.uuid4().hex
    ttl_s = settings.APP_SLOT_TTL_S

    deadline = _now() + max(0, timeout_s)
    while True:
        now = _now()
        try:
            acquired = client.eval(
                ACQUIRE_LUA, 1, key, str(now), str(max(1, int(limit))), token, str(now + ttl_s), str(ttl_s)
            )
            if int(acquired) > 0:
                return token
        except Exception as e:
            # If Redis misbehaves, prefer availability over throttling.
            logger.warning(f"App slot acquire for {app_id} failed open: {e}")
            return UNTHROTTLED
        if _now() >= deadline:
            return None
        time.sleep(max(0.05, float(poll_s)))


def release_app_slot(app_id: str, token: str) -> None:
    if token == UNTHROTTLED:
        return
    client = get_redis_client()
    if not client:
        return
    try:
        client.zrem(slot_key(app_id), token)
    except Exception as e:
        # Best-effort release only; the holder's expiry bounds any leak.
        logger.warning(f"App slot release for {app_id} failed: {e}")


@contextmanager
def app_slot(app_id: str, limit: int, timeout_s: Optional[float] = None) -> Iterator[bool]:
    """
    Usage:
        with app_slot(app.id, app_parallelism(registry, app)) as acquired:
            if not acquired:
                return self.defer()
            ...connector call...
    """
    token = acquire_app_slot(app_id, limit, timeout_s=timeout_s)
    try:
        yield token is not None
    finally:
        if token is not None:
            release_app_slot(app_id, token)
