import asyncio
import json
import unittest
from unittest.mock import MagicMock

import redis

from iris_api.core.config import settings
from iris_api.schemas.answer import QueryFilter
from iris_api.services.answer_cache import (
    AnswerCache,
    MemoryCacheBackend,
    RedisCacheBackend,
    build_cache_key,
    should_cache,
)
from iris_api.services.errors import CacheBackendUnavailable


class _Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class CacheKeyTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._snapshot = {"answer_cache_key_prefix": settings.answer_cache_key_prefix}
        settings.answer_cache_key_prefix = "iris:answer"

    def tearDown(self) -> None:
        for name, value in self._snapshot.items():
            setattr(settings, name, value)

    def test_key_ignores_case_and_punctuation(self) -> None:
        first = build_cache_key("What has Mike built?", "general")
        second = build_cache_key("  what HAS mike built ", "general")

        self.assertEqual(first, second)
        self.assertTrue(first.startswith("iris:answer:general:"))

    def test_key_depends_on_intent_and_filters(self) -> None:
        base = build_cache_key("python projects", "filter_query", QueryFilter(skills=["Python"]))

        self.assertNotEqual(base, build_cache_key("python projects", "general"))
        self.assertNotEqual(base, build_cache_key("python projects", "filter_query", QueryFilter(skills=["Swift"])))
        self.assertEqual(base, build_cache_key("python projects", "filter_query", {"skills": ["Python"]}))

    def test_should_cache_rejects_short_long_and_time_sensitive(self) -> None:
        self.assertTrue(should_cache("What projects has Mike built?"))
        self.assertFalse(should_cache("hi"))
        self.assertFalse(should_cache("x" * 201))
        self.assertFalse(should_cache("What is Mike working on right now?"))
        self.assertFalse(should_cache("Latest projects?"))


class MemoryCacheBackendTestCase(unittest.TestCase):
    def test_entries_expire_after_ttl(self) -> None:
        clock = _Clock()
        backend = MemoryCacheBackend(max_entries=10, clock=clock)
        backend.set("k", {"answer": "a"}, ttl_seconds=60)

        clock.now += 59
        self.assertEqual(backend.get("k"), {"answer": "a"})
        clock.now += 1
        self.assertIsNone(backend.get("k"))
        self.assertEqual(backend.size(), 0)

    def test_oldest_entry_is_evicted_at_capacity(self) -> None:
        clock = _Clock()
        backend = MemoryCacheBackend(max_entries=2, clock=clock)
        for key in ("a", "b", "c"):
            backend.set(key, {"query": key}, ttl_seconds=60)
            clock.now += 1

        self.assertIsNone(backend.get("a"))
        self.assertIsNotNone(backend.get("b"))
        self.assertIsNotNone(backend.get("c"))

    def test_clear_by_pattern_matches_key_or_query(self) -> None:
        backend = MemoryCacheBackend(max_entries=10)
        backend.set("iris:answer:general:1", {"query": "python projects"}, 60)
        backend.set("iris:answer:general:2", {"query": "swift apps"}, 60)
        backend.set("iris:answer:contact:3", {"query": "email"}, 60)

        self.assertEqual(backend.clear("python*"), 1)
        self.assertEqual(backend.clear("*:contact:*"), 1)
        self.assertEqual(backend.size(), 1)
        self.assertEqual(backend.clear(), 1)
        self.assertEqual(backend.size(), 0)

    def test_clear_count_ignores_expired_entries(self) -> None:
        clock = _Clock()
        backend = MemoryCacheBackend(max_entries=10, clock=clock)
        backend.set("short", {"query": "python"}, ttl_seconds=1)
        backend.set("long", {"query": "python"}, ttl_seconds=100)
        clock.now += 5

        before = backend.size()
        cleared = backend.clear()
        after = backend.size()

        self.assertEqual((before, cleared, after), (1, 1, 0))
        self.assertEqual(before - after, cleared)

        backend.set("stale", {"query": "swift"}, ttl_seconds=1)
        backend.set("fresh", {"query": "swift"}, ttl_seconds=100)
        clock.now += 5
        self.assertEqual(backend.clear("swift*"), 1)


class AnswerCacheTestCase(unittest.TestCase):
    def test_stats_track_hits_and_misses(self) -> None:
        cache = AnswerCache(MemoryCacheBackend(max_entries=10), ttl_seconds=60)

        self.assertIsNone(cache.get("k"))
        self.assertTrue(cache.set("k", {"answer": "a"}))
        self.assertEqual(cache.get("k"), {"answer": "a"})

        stats = cache.get_stats()
        self.assertEqual(stats["hits"], 1)
        self.assertEqual(stats["misses"], 1)
        self.assertEqual(stats["hit_rate"], 0.5)
        self.assertEqual(stats["size"], 1)
        self.assertEqual(stats["backend"], "memory")

    def test_backend_failure_counts_as_miss(self) -> None:
        backend = MagicMock()
        backend.name = "redis"
        backend.get.side_effect = CacheBackendUnavailable("down")
        backend.set.side_effect = CacheBackendUnavailable("down")
        backend.size.side_effect = CacheBackendUnavailable("down")
        cache = AnswerCache(backend, ttl_seconds=60)

        self.assertIsNone(cache.get("k"))
        self.assertFalse(cache.set("k", {"answer": "a"}))
        stats = cache.get_stats()
        self.assertEqual((stats["size"], stats["misses"]), (0, 1))

    def test_single_flight_shares_one_computation(self) -> None:
        cache = AnswerCache(MemoryCacheBackend(max_entries=10), ttl_seconds=60)
        calls = []

        async def factory():
            calls.append(1)
            await asyncio.sleep(0.01)
            return {"answer": "computed"}

        async def scenario():
            return await asyncio.gather(
                cache.get_or_compute("k", factory),
                cache.get_or_compute("k", factory),
                cache.get_or_compute("k", factory),
            )

        results = asyncio.run(scenario())

        self.assertEqual(len(calls), 1)
        self.assertEqual(results, [{"answer": "computed"}] * 3)

    def test_failed_owner_lets_waiters_compute(self) -> None:
        cache = AnswerCache(MemoryCacheBackend(max_entries=10), ttl_seconds=60)
        attempts = []

        async def flaky():
            attempts.append(1)
            await asyncio.sleep(0.01)
            if len(attempts) == 1:
                raise RuntimeError("boom")
            return {"answer": "second"}

        async def scenario():
            return await asyncio.gather(
                cache.get_or_compute("k", flaky),
                cache.get_or_compute("k", flaky),
                return_exceptions=True,
            )

        first, second = asyncio.run(scenario())

        self.assertIsInstance(first, RuntimeError)
        self.assertEqual(second, {"answer": "second"})
        self.assertEqual(len(attempts), 2)


class RedisCacheBackendTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.client = MagicMock()
        self.backend = RedisCacheBackend(self.client, prefix="iris:answer")

    def test_set_uses_setex_with_json(self) -> None:
        self.backend.set("iris:answer:general:1", {"answer": "a"}, 120)

        key, ttl, raw = self.client.setex.call_args.args
        self.assertEqual((key, ttl), ("iris:answer:general:1", 120))
        self.assertEqual(json.loads(raw), {"answer": "a"})

    def test_get_decodes_json_and_ignores_garbage(self) -> None:
        self.client.get.return_value = json.dumps({"answer": "a"})
        self.assertEqual(self.backend.get("k"), {"answer": "a"})

        self.client.get.return_value = "not json"
        self.assertIsNone(self.backend.get("k"))

        self.client.get.return_value = None
        self.assertIsNone(self.backend.get("k"))

    def test_clear_with_pattern_checks_stored_query(self) -> None:
        self.client.scan_iter.return_value = iter(["iris:answer:general:1", "iris:answer:general:2"])
        self.client.mget.return_value = [json.dumps({"query": "python projects"}), json.dumps({"query": "swift"})]
        self.client.delete.return_value = 1

        cleared = self.backend.clear("python*")

        self.assertEqual(cleared, 1)
        self.client.delete.assert_called_once_with("iris:answer:general:1")
        self.client.scan_iter.assert_called_once_with(match="iris:answer:*", count=200)

    def test_redis_errors_surface_as_unavailable(self) -> None:
        self.client.get.side_effect = redis.ConnectionError("refused")
        self.client.scan_iter.side_effect = redis.ConnectionError("refused")

        with self.assertRaises(CacheBackendUnavailable):
            self.backend.get("k")
        with self.assertRaises(CacheBackendUnavailable):
            self.backend.clear()
        with self.assertRaises(CacheBackendUnavailable):
            self.backend.size()


if __name__ == "__main__":
    unittest.main()
