from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import re
import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Awaitable, Callable, Optional, Protocol

import redis

from iris_api.core.config import settings
from iris_api.schemas.answer import QueryFilter
from iris_api.services.errors import CacheBackendUnavailable
from iris_api.services.kb_text import normalize_query_text

_LOGGER = logging.getLogger(__name__)

TIME_SENSITIVE_RE = re.compile(
    r"\b(today|now|current|currently|recent|latest|this week|this month|right now|at the moment|these days|lately)\b",
    re.IGNORECASE,
)
MIN_CACHEABLE_CHARS = 5
MAX_CACHEABLE_CHARS = 200


def _stable_json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, separators=(",", ":"))


def build_cache_key(
    query: str,
    intent: str,
    filters: QueryFilter | dict[str, Any] | None = None,
    *,
    prefix: str | None = None,
) -> str:
    if isinstance(filters, QueryFilter):
        filter_payload: Any = filters.to_payload()
    else:
        filter_payload = filters or {}
    raw = f"{normalize_query_text(query)}|{intent}|{_stable_json_dumps(filter_payload)}"
    digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()
    return f"{prefix or settings.answer_cache_key_prefix}:{intent}:{digest}"


def should_cache(query: str) -> bool:
    text = str(query or "").strip()
    if len(text) < MIN_CACHEABLE_CHARS or len(text) > MAX_CACHEABLE_CHARS:
        return False
    return not TIME_SENSITIVE_RE.search(text)


def _compile_pattern(pattern: str) -> re.Pattern[str]:
    return re.compile(".*".join(re.escape(part) for part in pattern.split("*")))


@dataclass
class CacheEntry:
    key: str
    value: dict[str, Any]
    created_at: float
    expires_at: float


class CacheBackend(Protocol):
    name: str

    def get(self, key: str) -> dict[str, Any] | None: ...

    def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None: ...

    def clear(self, pattern: str | None = None) -> int: ...

    def size(self) -> int: ...


class MemoryCacheBackend:
    name = "memory"

    def __init__(self, max_entries: int | None = None, clock: Callable[[], float] = time.time) -> None:
        self.max_entries = int(max_entries or settings.answer_cache_max_entries)
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = Lock()

    def get(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                self._entries.pop(key, None)
                return None
            return entry.value

    def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        now = self._clock()
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = CacheEntry(key=key, value=value, created_at=now, expires_at=now + ttl_seconds)
            while len(self._entries) > self.max_entries:
                oldest = min(self._entries.values(), key=lambda entry: entry.created_at)
                self._entries.pop(oldest.key, None)

    def _drop_expired(self) -> None:
        now = self._clock()
        for key in [key for key, entry in self._entries.items() if entry.expires_at <= now]:
            self._entries.pop(key, None)

    def clear(self, pattern: str | None = None) -> int:
        with self._lock:
            self._drop_expired()
            if not pattern:
                cleared = len(self._entries)
                self._entries.clear()
                return cleared
            regex = _compile_pattern(pattern)
            doomed = [
                key
                for key, entry in self._entries.items()
                if regex.search(key) or regex.search(str(entry.value.get("query", "")))
            ]
            for key in doomed:
                self._entries.pop(key, None)
            return len(doomed)

    def size(self) -> int:
        with self._lock:
            self._drop_expired()
            return len(self._entries)


class RedisCacheBackend:
    name = "redis"

    def __init__(self, client: redis.Redis, prefix: str | None = None) -> None:
        self.client = client
        self.prefix = prefix or settings.answer_cache_key_prefix

    @classmethod
    def from_url(cls, url: str | None = None) -> "RedisCacheBackend":
        return cls(redis.Redis.from_url(url or settings.redis_url, decode_responses=True))

    def _keys(self) -> list[str]:
        return list(self.client.scan_iter(match=f"{self.prefix}:*", count=200))

    def get(self, key: str) -> dict[str, Any] | None:
        try:
            raw = self.client.get(key)
        except redis.RedisError as exc:
            raise CacheBackendUnavailable(f"redis get failed: {exc}") from exc
        if not raw:
            return None
        try:
            value = json.loads(raw)
        except ValueError:
            return None
        return value if isinstance(value, dict) else None

    def set(self, key: str, value: dict[str, Any], ttl_seconds: int) -> None:
        try:
            self.client.setex(key, int(ttl_seconds), json.dumps(value, ensure_ascii=False, default=str))
        except redis.RedisError as exc:
            raise CacheBackendUnavailable(f"redis set failed: {exc}") from exc

    def clear(self, pattern: str | None = None) -> int:
        try:
            keys = self._keys()
            if not keys:
                return 0
            if pattern:
                regex = _compile_pattern(pattern)
                values = self.client.mget(keys)
                doomed = []
                for key, raw in zip(keys, values):
                    query = ""
                    if raw:
                        try:
                            query = str(json.loads(raw).get("query", ""))
                        except (ValueError, AttributeError):
                            query = ""
                    if regex.search(key) or regex.search(query):
                        doomed.append(key)
            else:
                doomed = keys
            if not doomed:
                return 0
            return int(self.client.delete(*doomed))
        except redis.RedisError as exc:
            raise CacheBackendUnavailable(f"redis clear failed: {exc}") from exc

    def size(self) -> int:
        try:
            return len(self._keys())
        except redis.RedisError as exc:
            raise CacheBackendUnavailable(f"redis scan failed: {exc}") from exc


class AnswerCache:
    """TTL answer cache with hit/miss accounting and single-flight claims."""

    def __init__(self, backend: CacheBackend, ttl_seconds: int | None = None) -> None:
        self.backend = backend
        self.ttl_seconds = int(ttl_seconds or settings.answer_cache_ttl_seconds)
        self._hits = 0
        self._misses = 0
        self._stats_lock = Lock()
        self._inflight: dict[str, asyncio.Future] = {}
        self._inflight_lock = Lock()

    def _record(self, hit: bool) -> None:
        with self._stats_lock:
            if hit:
                self._hits += 1
            else:
                self._misses += 1

    def get(self, key: str) -> dict[str, Any] | None:
        try:
            value = self.backend.get(key)
        except CacheBackendUnavailable as exc:
            _LOGGER.warning("answer cache lookup failed, treating as miss: %s", exc)
            value = None
        self._record(value is not None)
        return value

    def set(self, key: str, value: dict[str, Any], ttl_seconds: int | None = None) -> bool:
        try:
            self.backend.set(key, value, int(ttl_seconds or self.ttl_seconds))
        except CacheBackendUnavailable as exc:
            _LOGGER.warning("answer cache store failed: %s", exc)
            return False
        return True

    def clear(self, pattern: str | None = None) -> int:
        cleared = self.backend.clear(pattern)
        _LOGGER.info("answer cache cleared: pattern=%s count=%s", pattern or "*", cleared)
        return cleared

    def get_stats(self) -> dict[str, Any]:
        try:
            size = self.backend.size()
        except CacheBackendUnavailable as exc:
            _LOGGER.warning("answer cache size unavailable: %s", exc)
            size = 0
        with self._stats_lock:
            hits, misses = self._hits, self._misses
        total = hits + misses
        return {
            "size": size,
            "hits": hits,
            "misses": misses,
            "hit_rate": (hits / total) if total else 0.0,
            "backend": self.backend.name,
        }

    def claim(self, key: str) -> Optional[asyncio.Future]:
        """None makes the caller the owner; otherwise await the returned future."""
        loop = asyncio.get_running_loop()
        with self._inflight_lock:
            pending = self._inflight.get(key)
            if pending is not None and not pending.done():
                return pending
            self._inflight[key] = loop.create_future()
        return None

    def release(self, key: str, value: dict[str, Any] | None) -> None:
        with self._inflight_lock:
            pending = self._inflight.pop(key, None)
        if pending is not None and not pending.done():
            pending.set_result(value)

    async def get_or_compute(
        self,
        key: str,
        factory: Callable[[], Awaitable[dict[str, Any] | None]],
    ) -> dict[str, Any] | None:
        cached = self.get(key)
        if cached is not None:
            return cached
        pending = self.claim(key)
        if pending is not None:
            shared = await asyncio.shield(pending)
            if shared is not None:
                return shared
            return await factory()
        value: dict[str, Any] | None = None
        try:
            value = await factory()
            if value is not None:
                self.set(key, value)
            return value
        finally:
            self.release(key, value)


def build_answer_cache(backend: str | None = None) -> AnswerCache:
    name = str(backend or settings.answer_cache_backend or "memory").strip().lower()
    if name == "redis":
        return AnswerCache(RedisCacheBackend.from_url())
    if name != "memory":
        _LOGGER.warning("unknown answer cache backend %s, using memory", name)
    return AnswerCache(MemoryCacheBackend())
