# caloric/auth.py
"""
API key auth and pluggable rate-limiter.

Env vars:
- MOCK_AUTH (default: true): bypass auth in dev
- API_KEYS: comma-separated allowed keys
- API_KEYS_FILE: optional path to file with one key per line
- RATE_LIMIT_PER_MINUTE (default: 60)
- REDIS_URL: optional, enables Redis-based distributed limiter
"""

import os
import threading
import time
from typing import Dict, Optional, Set, Tuple

import redis

from caloric import monitoring

MOCK_AUTH = os.getenv("MOCK_AUTH", "true").lower() in ("1", "true", "yes")
RATE_LIMIT_PER_MINUTE = int(os.getenv("RATE_LIMIT_PER_MINUTE", "60"))
API_KEYS_ENV = os.getenv("API_KEYS", "")
API_KEYS_FILE = os.getenv("API_KEYS_FILE", "")
REDIS_URL = os.getenv("REDIS_URL", "")

# Routes served without a key
PUBLIC_PATHS = frozenset({"/health", "/metrics"})


def load_api_keys(env_value: str = API_KEYS_ENV, path: str = API_KEYS_FILE) -> Set[str]:
    keys = {k.strip() for k in env_value.split(",") if k.strip()}
    if path and os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            keys.update(line.strip() for line in f if line.strip())
    return keys


API_KEYS = load_api_keys()


class InMemoryFixedWindowLimiter:
    """Thread-safe in-memory fixed-window rate limiter (per-process)."""

    def __init__(self, limit_per_minute: int = 60):
        self.limit = limit_per_minute
        self._store: Dict[str, Tuple[int, int]] = {}  # key -> (window_minute, count)
        self._lock = threading.Lock()

    def allow_request(self, api_key: str) -> Tuple[bool, Optional[int]]:
        window = int(time.time()) // 60
        with self._lock:
            wstart, count = self._store.get(api_key, (window, 0))
            if wstart != window:
                count = 0
            if count >= self.limit:
                return False, 0
            self._store[api_key] = (window, count + 1)
            return True, self.limit - (count + 1)

    def reset(self):
        with self._lock:
            self._store.clear()


class RedisFixedWindowLimiter:
    """Redis fixed-window counter using INCR + EXPIRE. Fails open."""

    def __init__(self, redis_url: str, limit_per_minute: int = 60, client=None):
        self.limit = limit_per_minute
        self._client = client if client is not None else redis.Redis.from_url(redis_url, decode_responses=True)

    def allow_request(self, api_key: str) -> Tuple[bool, Optional[int]]:
        window = int(time.time()) // 60
        key = f"caloric:rate:{api_key}:{window}"
        try:
            count = int(self._client.incr(key))
            if count == 1:
                self._client.expire(key, 120)
        except redis.RedisError as e:
            monitoring.logger.warning("Rate limiter unavailable, allowing request", extra={"error": str(e)})
            return True, None
        if count > self.limit:
            return False, 0
        return True, self.limit - count


def build_limiter(redis_url: str = REDIS_URL, limit_per_minute: int = RATE_LIMIT_PER_MINUTE):
    if redis_url:
        return RedisFixedWindowLimiter(redis_url, limit_per_minute)
    return InMemoryFixedWindowLimiter(limit_per_minute)


_rate_limiter = build_limiter()


def is_public_path(path: str) -> bool:
    return path in PUBLIC_PATHS


def is_key_allowed(api_key: Optional[str]) -> bool:
    """Check if API key is valid. If MOCK_AUTH=true, always returns True."""
    if MOCK_AUTH:
        return True
    return bool(api_key) and api_key in API_KEYS


def check_rate_limit(api_key: str) -> Tuple[bool, Optional[int]]:
    """Check and consume quota. Returns (allowed, remaining)."""
    if MOCK_AUTH:
        return True, None
    if not api_key:
        return False, 0
    return _rate_limiter.allow_request(api_key)
