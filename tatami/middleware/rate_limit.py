"""
Rate limiter: in-memory sliding window.

Limits:
  - Click tracking per client IP: configurable (default 30/min)
  - Magic-link requests per client IP: 5/min

Process-local: good enough for one instance, resets on restart.
"""

import time
from fastapi import Request
from tatami.config import get_settings
from tatami.core.device import client_ip
from tatami.core.errors import APIError

import structlog

logger = structlog.get_logger()

_memory_store: dict[str, list[float]] = {}

MAX_TRACKED_KEYS = 10000


def _sweep(cutoff: float) -> None:
    stale = [k for k, hits in _memory_store.items() if not hits or hits[-1] <= cutoff]
    for k in stale:
        del _memory_store[k]


def _sliding_window_check(key: str, limit: int, window_seconds: int = 60) -> tuple[bool, int]:
    now = time.time()
    cutoff = now - window_seconds

    # Periodic cleanup
    if len(_memory_store) > MAX_TRACKED_KEYS:
        _sweep(cutoff)

    hits = [t for t in _memory_store.get(key, ()) if t > cutoff]
    current_count = len(hits)

    if current_count >= limit:
        if hits:
            _memory_store[key] = hits
        else:
            _memory_store.pop(key, None)
        return False, 0

    hits.append(now)
    _memory_store[key] = hits
    return True, limit - current_count - 1


def check_rate_limit(key: str, limit: int, window: int = 60):
    allowed, remaining = _sliding_window_check(key, limit, window)
    if not allowed:
        logger.info("rate_limited", key=key, limit=limit)
        raise APIError(
            429,
            "Rate limit exceeded. Slow down.",
            headers={
                "Retry-After": str(window),
                "X-RateLimit-Limit": str(limit),
                "X-RateLimit-Remaining": "0",
            },
        )
    return remaining


def reset_rate_limits():
    _memory_store.clear()


def rate_limit_track(request: Request):
    settings = get_settings()
    return check_rate_limit(
        f"track:{client_ip(request)}",
        settings.rate_limit_track_per_ip_per_minute,
    )


MAGIC_LINK_PER_IP_PER_MINUTE = 5


def rate_limit_magic_link(request: Request):
    return check_rate_limit(f"magic:{client_ip(request)}", MAGIC_LINK_PER_IP_PER_MINUTE)
