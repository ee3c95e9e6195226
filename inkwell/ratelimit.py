"""Fixed-window request limits per (bucket, key).

In-process by default; when REDIS_URL is set the window counters live in
Redis so every worker shares them. A Redis failure degrades to the
in-process store for that call.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, Optional, Tuple

import redis

log = logging.getLogger(__name__)

WINDOW_SECONDS: int = int(os.getenv("RATE_WINDOW_SECONDS", "60"))
MAX_REQUESTS: int = int(os.getenv("RATE_MAX_REQUESTS", "20"))
REDIS_URL = os.getenv("REDIS_URL", "").strip()
REDIS_KEY_PREFIX = os.getenv("RATE_REDIS_PREFIX", "inkwell:rl")
# expired windows are swept once the in-process store grows past this many keys
PRUNE_THRESHOLD: int = int(os.getenv("RATE_PRUNE_THRESHOLD", "1024"))

_store: Dict[Tuple[str, str], Dict[str, int]] = {}


def _now() -> int:
    return int(time.time())


def _bk(bucket: str, key: str) -> Tuple[str, str]:
    return (bucket or "default", key or "anon")


def _prune(now: int) -> int:
    expired = [k for k, entry in _store.items() if now >= entry["reset_ts"]]
    for k in expired:
        del _store[k]
    if expired:
        log.debug("ratelimit: pruned %d expired window(s)", len(expired))
    return len(expired)


def _ensure_entry(bucket: str, key: str, now: int) -> Dict[str, int]:
    k = _bk(bucket, key)
    if k not in _store and len(_store) >= PRUNE_THRESHOLD:
        _prune(now)
    entry = _store.get(k)
    if entry is None or now >= entry["reset_ts"]:
        _store[k] = {"count": 0, "reset_ts": now + WINDOW_SECONDS}
    return _store[k]


def allow_request(bucket: str, key: str, now: Optional[int] = None) -> Tuple[bool, int, int]:
    """Returns (allowed, remaining, reset_ts) using the in-process store."""
    entry = _ensure_entry(bucket, key, now or _now())
    if entry["count"] < MAX_REQUESTS:
        entry["count"] += 1
        return True, max(0, MAX_REQUESTS - entry["count"]), entry["reset_ts"]
    return False, 0, entry["reset_ts"]


class RedisRateLimiter:
    """Shared window counters; a counter's TTL is the time left in its window.

    The first hit in a window creates the counter and starts its expiry, so
    windows begin at a client's first request rather than on clock
    boundaries, matching the in-process store.
    """

    def __init__(self, client: Any, window_seconds: Optional[int] = None, max_requests: Optional[int] = None) -> None:
        self.client = client
        self.window_seconds = int(window_seconds or WINDOW_SECONDS)
        self.max_requests = int(max_requests or MAX_REQUESTS)

    @classmethod
    def from_url(cls, url: str) -> "RedisRateLimiter":
        # lazy: no network traffic until the first command
        return cls(redis.from_url(url, decode_responses=True))

    def counter_name(self, bucket: str, key: str) -> str:
        b, k = _bk((bucket or "").strip(), (key or "").strip())
        return f"{REDIS_KEY_PREFIX}:{b}:{k}"

    def check_and_increment(self, bucket: str, key: str, now: Optional[int] = None) -> Tuple[bool, int, int]:
        current = now or _now()
        name = self.counter_name(bucket, key)
        pipe = self.client.pipeline()
        pipe.incr(name)
        pipe.ttl(name)
        used, ttl = pipe.execute()
        # -1: counter has no expiry yet (first hit); -2: it vanished between the two commands
        if ttl is None or int(ttl) < 0:
            self.client.expire(name, self.window_seconds)
            ttl = self.window_seconds
        used = int(used)
        reset_ts = current + int(ttl)
        if used > self.max_requests:
            return False, 0, reset_ts
        return True, self.max_requests - used, reset_ts


_redis_limiter: Optional[RedisRateLimiter] = None


def _limiter() -> Optional[RedisRateLimiter]:
    global _redis_limiter
    if not REDIS_URL:
        return None
    if _redis_limiter is None:
        _redis_limiter = RedisRateLimiter.from_url(REDIS_URL)
    return _redis_limiter


def check_and_increment(bucket: str, key: str, now: Optional[int] = None) -> Tuple[bool, int, int]:
    limiter = _limiter()
    if limiter is not None:
        try:
            return limiter.check_and_increment(bucket, key, now)
        except redis.RedisError as exc:
            log.warning("ratelimit: Redis unavailable, using in-process window: %s", exc)
    return allow_request(bucket, key, now)


def _reset() -> None:
    """Used by tests to clear state."""
    global _redis_limiter
    _store.clear()
    _redis_limiter = None
