from __future__ import annotations

import hashlib
import logging
import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Mapping

from iris_api.core.config import settings

_LOGGER = logging.getLogger(__name__)


@dataclass
class RateLimitEntry:
    count: int
    reset_at: float


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: float

    def retry_after_seconds(self, now: float | None = None) -> int:
        current = time.time() if now is None else now
        return max(1, int(self.reset_at - current + 0.999))


def client_identity(ip: str, user_agent: str) -> str:
    return hashlib.sha256(f"{ip}:{user_agent}".encode("utf-8")).hexdigest()[:16]


def client_ip(headers: Mapping[str, Any]) -> str:
    forwarded = str(headers.get("x-forwarded-for") or "").strip()
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = str(headers.get("x-real-ip") or "").strip()
    return real_ip or "unknown"


class RateLimiter:
    """Fixed-window limiter keyed by a hash of client IP and user agent."""

    def __init__(
        self,
        *,
        window_seconds: float | None = None,
        max_requests: int | None = None,
        sweep_threshold: int | None = None,
    ) -> None:
        self.window_seconds = float(window_seconds or settings.rate_limit_window_seconds)
        self.max_requests = int(max_requests or settings.rate_limit_max_requests)
        self.sweep_threshold = int(sweep_threshold or settings.rate_limit_sweep_threshold)
        self._entries: dict[str, RateLimitEntry] = {}
        self._lock = Lock()

    def _sweep(self, now: float) -> None:
        expired = [key for key, entry in self._entries.items() if entry.reset_at <= now]
        for key in expired:
            self._entries.pop(key, None)

    def check(self, ip: str, user_agent: str, now: float | None = None) -> RateLimitDecision:
        current = time.time() if now is None else now
        identity = client_identity(ip, user_agent)
        with self._lock:
            if len(self._entries) > self.sweep_threshold:
                self._sweep(current)
            entry = self._entries.get(identity)
            if entry is None or current >= entry.reset_at:
                entry = RateLimitEntry(count=1, reset_at=current + self.window_seconds)
                self._entries[identity] = entry
                return RateLimitDecision(allowed=True, remaining=self.max_requests - 1, reset_at=entry.reset_at)
            if entry.count >= self.max_requests:
                _LOGGER.warning("rate limit exceeded: identity=%s reset_at=%.0f", identity, entry.reset_at)
                return RateLimitDecision(allowed=False, remaining=0, reset_at=entry.reset_at)
            entry.count += 1
            return RateLimitDecision(
                allowed=True,
                remaining=self.max_requests - entry.count,
                reset_at=entry.reset_at,
            )

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()
