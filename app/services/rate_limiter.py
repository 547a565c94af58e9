"""Per-customer fixed-window rate limiting.

Each customer gets `limit` events per `window_seconds`. The window starts at
the first allowed event and restarts once expired. Rejected events do not
count against the window.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import redis.asyncio as redis_async

from app.config import Settings
from app.logging_config import get_logger
from app.services.alert_service import alert_warning

logger = get_logger("rate_limiter")

PURGE_THRESHOLD = 5000


@dataclass
class RateWindow:
    count: int
    started_at: float


class RateLimiter(ABC):
    @abstractmethod
    async def allow(self, customer_id: str, now: datetime) -> bool:
        """Count the event against the customer's window; False once the limit is reached."""

    def sweep(self, now: datetime) -> int:
        """Drop expired windows. Returns how many were removed."""
        return 0


class InMemoryRateLimiter(RateLimiter):
    """Process-local windows. Correct for a single worker process only."""

    def __init__(self, limit: int, window_seconds: float, purge_threshold: int = PURGE_THRESHOLD):
        self.limit = limit
        self.window_seconds = window_seconds
        self.purge_threshold = purge_threshold
        self._windows: dict[str, RateWindow] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._windows)

    def _expired(self, window: RateWindow, now_ts: float) -> bool:
        return now_ts - window.started_at >= self.window_seconds

    def _purge_expired(self, now_ts: float) -> int:
        expired = [key for key, window in self._windows.items() if self._expired(window, now_ts)]
        for key in expired:
            self._windows.pop(key, None)
        return len(expired)

    async def allow(self, customer_id: str, now: datetime) -> bool:
        now_ts = now.timestamp()
        with self._lock:
            if len(self._windows) >= self.purge_threshold:
                self._purge_expired(now_ts)

            window = self._windows.get(customer_id)
            if window is None or self._expired(window, now_ts):
                self._windows[customer_id] = RateWindow(count=1, started_at=now_ts)
                return True
            if window.count >= self.limit:
                return False
            window.count += 1
            return True

    def sweep(self, now: datetime) -> int:
        with self._lock:
            removed = self._purge_expired(now.timestamp())
        if removed:
            logger.debug(f"Swept {removed} expired rate windows")
        return removed


class RedisRateLimiter(RateLimiter):
    """Shared windows in Redis. Fails open when Redis is down.

    The window key is created with its TTL and incremented in one MULTI/EXEC
    transaction, so a key never exists without an expiry.
    """

    key_prefix = "dinebot:rate:"

    def __init__(self, client, limit: int, window_seconds: float):
        self.client = client
        self.limit = limit
        self.window_seconds = window_seconds
        self._warned = False

    async def allow(self, customer_id: str, now: datetime) -> bool:
        key = f"{self.key_prefix}{customer_id}"
        ttl = max(1, int(round(self.window_seconds)))
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                # SET NX leaves an existing window (and its TTL) untouched; INCR keeps the TTL.
                pipe.set(key, 0, ex=ttl, nx=True)
                pipe.incr(key)
                _, count = await pipe.execute()
        except Exception as exc:
            logger.warning(
                "Rate limit redis check failed, allowing event",
                extra={"context": {"customer_id": customer_id, "error": str(exc)}},
            )
            if not self._warned:
                self._warned = True
                await alert_warning("Rate limiter degraded (redis unavailable)", {"error": str(exc)})
            return True

        self._warned = False
        return count <= self.limit


def build_rate_limiter(config: Settings, redis_client: Optional[object] = None) -> RateLimiter:
    """Pick the backend named by RATE_LIMIT_BACKEND."""
    if config.rate_limit_backend == "redis":
        if redis_client is None:
            redis_client = redis_async.from_url(
                config.redis_url,
                decode_responses=True,
                socket_connect_timeout=config.store_timeout_seconds,
                socket_timeout=config.store_timeout_seconds,
            )
        return RedisRateLimiter(redis_client, config.rate_limit_count, config.rate_limit_window_seconds)
    return InMemoryRateLimiter(config.rate_limit_count, config.rate_limit_window_seconds)
