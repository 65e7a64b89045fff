"""
FeedService 单元测试

覆盖范围：
  - 配置模块（服务发现、环境变量解析）
  - 缓存键生成（顺序无关、去重、超长键）
  - 三态结果与缓存信封编解码
  - 缓存存储适配（内存 / Redis pipeline / 故障降级）
  - cache-aside 编排（命中、校验、负缓存、single-flight）
  - 批量协调（单次 pipeline、节流、截断、失败隔离）
"""

import asyncio
import os
import sys
import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

# 确保项目根目录在 sys.path
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from feed_service.layers.cache import CacheLayer, MemoryCacheStore, RedisCacheStore  # noqa: E402
from feed_service.layers.outcome import FetchOutcome, OutcomeKind  # noqa: E402


# ─────────────────────────────────────────────────────────
# 辅助函数
# ─────────────────────────────────────────────────────────

def _run(coro):
    return asyncio.run(coro)


def _producer(*results):
    """按顺序返回给定结果的 producer；结果为异常时抛出，最后一个结果重复使用"""
    queue = list(results)
    calls = []

    async def produce():
        calls.append(time.monotonic())
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item

    produce.calls = calls
    return produce


def _put_raw(store, key, raw, ttl=60):
    """绕过序列化直接写入原始值，模拟损坏的缓存条目"""
    store._data[key] = (store._clock() + ttl, raw)


class _SpyStore(MemoryCacheStore):
    """记录调用次数与写入 TTL 的内存存储"""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.get_many_calls = []
        self.set_calls = []

    async def get_many(self, keys):
        self.get_many_calls.append(list(keys))
        return await super().get_many(keys)

    async def set(self, key, value, ttl):
        self.set_calls.append((key, ttl))
        return await super().set(key, value, ttl)


def _orchestrator(store=None, single_flight=True):
    from feed_service.layers.orchestrator import CacheAsideOrchestrator
    return CacheAsideOrchestrator(store or _SpyStore(), single_flight=single_flight)


# ─────────────────────────────────────────────────────────
# 1. 配置模块测试
# ─────────────────────────────────────────────────────────

class TestConfig:
    def test_defaults(self):
        """默认配置不依赖外部服务即可实例化"""
        from feed_service.config import FeedServiceSettings
        s = FeedServiceSettings()
        assert s.PORT == 8002
        assert s.BATCH_MAX_ITEMS == 10
        assert s.BATCH_THROTTLE_MS == 100
        assert s.AIRCRAFT_CACHE_TTL == 86400

    def test_redis_url_no_auth(self):
        from feed_service.config import FeedServiceSettings
        s = FeedServiceSettings(REDIS_PASSWORD="")
        assert s.REDIS_URL.startswith("redis://")
        assert "@" not in s.REDIS_URL

    def test_redis_url_with_auth(self):
        from feed_service.config import FeedServiceSettings
        s = FeedServiceSettings(REDIS_PASSWORD="secret", REDIS_HOST="cache", REDIS_PORT=6379)
        assert ":secret@cache:6379" in s.REDIS_URL

    def test_env_override(self):
        from feed_service.config import FeedServiceSettings
        with patch.dict(os.environ, {"BATCH_THROTTLE_MS": "250", "single_flight_enabled": "false"}):
            s = FeedServiceSettings()
        assert s.BATCH_THROTTLE_MS == 250
        assert s.SINGLE_FLIGHT_ENABLED is False

    def test_docker_service_discovery(self):
        """Docker 环境下默认使用服务名而非 localhost"""
        with patch.dict(os.environ, {"DOCKER_CONTAINER": "true"}, clear=False):
            from feed_service import config as cfg_module
            assert cfg_module._default_redis_host() == "redis"

    def test_local_defaults(self):
        with patch.dict(os.environ, {"DOCKER_CONTAINER": "false"}, clear=False), \
             patch("os.path.exists", return_value=False):
            from feed_service import config as cfg_module
            assert cfg_module._default_redis_host() == "localhost"


# ─────────────────────────────────────────────────────────
# 2. 缓存键生成测试
# ─────────────────────────────────────────────────────────

class TestCacheKeys:
    def test_permutations_share_key(self):
        from feed_service.layers.keys import build_key
        assert build_key("quotes", ["AAPL", "MSFT"]) == build_key("quotes", ["MSFT", "AAPL"])

    def test_key_format(self):
        from feed_service.layers.keys import build_key
        assert build_key("market:crypto:v1", ["solana", "bitcoin"]) == "market:crypto:v1:bitcoin,solana"

    def test_trim_and_dedupe(self):
        from feed_service.layers.keys import build_key
        assert build_key("ns", [" b", "a", "b ", "", "  "]) == "ns:a,b"

    def test_case_fold_only_when_requested(self):
        from feed_service.layers.keys import build_key
        assert build_key("ns", ["ABC"], case_insensitive=True) == build_key("ns", ["abc"])
        assert build_key("ns", ["ABC"]) != build_key("ns", ["abc"])

    def test_empty_set(self):
        from feed_service.layers.keys import build_key
        assert build_key("ns", []) == "ns:"

    def test_long_key_hashed_and_order_independent(self):
        from feed_service.layers.keys import build_key
        ids = [f"symbol-{i:03d}" for i in range(40)]
        k1 = build_key("ns", ids)
        k2 = build_key("ns", list(reversed(ids)))
        assert k1 == k2
        assert k1.startswith("ns:")
        assert len(k1) <= 250

    def test_item_key(self):
        from feed_service.layers.keys import item_key
        assert item_key("military:aircraft:v1", " AE1234 ", case_insensitive=True) == "military:aircraft:v1:ae1234"


# ─────────────────────────────────────────────────────────
# 3. 三态结果与缓存信封
# ─────────────────────────────────────────────────────────

class TestOutcome:
    def test_encode_decode_positive(self):
        from feed_service.layers.outcome import decode_entry, encode_entry
        outcome = decode_entry(encode_entry(FetchOutcome.positive({"price": 1})))
        assert outcome.kind is OutcomeKind.POSITIVE
        assert outcome.value == {"price": 1}

    def test_encode_decode_negative(self):
        from feed_service.layers.outcome import decode_entry, encode_entry
        outcome = decode_entry(encode_entry(FetchOutcome.negative()))
        assert outcome.kind is OutcomeKind.NEGATIVE
        assert outcome.value is None

    def test_invalid_not_encodable(self):
        from feed_service.layers.outcome import encode_entry
        with pytest.raises(ValueError):
            encode_entry(FetchOutcome.invalid("empty"))

    @pytest.mark.parametrize("raw", [None, [], "text", {"value": 1}, {"kind": "bogus", "value": 1}, {"kind": "positive"}])
    def test_malformed_entry_is_miss(self, raw):
        from feed_service.layers.outcome import decode_entry
        assert decode_entry(raw) is None

    def test_all_signal_absent(self):
        from feed_service.layers.outcome import all_signal_absent
        assert all_signal_absent([{"price": 0}, {"price": 0.0}, {"price": None}], "price")
        assert all_signal_absent([{"other": 5}], "price")
        assert not all_signal_absent([{"price": 0}, {"price": 12.5}], "price")


# ─────────────────────────────────────────────────────────
# 4. 缓存存储适配测试
# ─────────────────────────────────────────────────────────

class TestMemoryCacheStore:
    def test_set_get_and_expiry(self):
        now = [1000.0]
        store = MemoryCacheStore(clock=lambda: now[0])

        async def scenario():
            await store.set("k", {"a": 1}, ttl=10)
            first = await store.get("k")
            now[0] += 11
            second = await store.get("k")
            return first, second

        first, second = _run(scenario())
        assert first == {"a": 1}
        assert second is None

    def test_corrupt_value_is_miss(self):
        store = MemoryCacheStore()
        _put_raw(store, "k", "{not json")
        assert _run(store.get("k")) is None

    def test_get_many_skips_missing(self):
        store = MemoryCacheStore()

        async def scenario():
            await store.set("a", 1, ttl=60)
            return await store.get_many(["a", "b"])

        assert _run(scenario()) == {"a": 1}

    def test_capacity_evicts_oldest(self):
        store = MemoryCacheStore(max_entries=2)

        async def scenario():
            for key in ("a", "b", "c"):
                await store.set(key, key, ttl=60)
            return await store.get_many(["a", "b", "c"])

        assert _run(scenario()) == {"b": "b", "c": "c"}


class TestRedisCacheStore:
    def test_get_decodes_json(self):
        redis = MagicMock()
        redis.get = AsyncMock(return_value='{"kind": "positive", "value": 1}')
        assert _run(RedisCacheStore(redis).get("k")) == {"kind": "positive", "value": 1}

    def test_set_uses_setex(self):
        redis = MagicMock()
        redis.setex = AsyncMock(return_value=True)
        assert _run(RedisCacheStore(redis).set("k", {"v": 1}, 30)) is True
        redis.setex.assert_awaited_once_with("k", 30, '{"v": 1}')

    def test_get_many_single_pipeline_round_trip(self):
        redis = MagicMock()
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=['{"a": 1}', None, "not json"])
        redis.pipeline.return_value = pipe

        result = _run(RedisCacheStore(redis).get_many(["a", "b", "c"]))

        assert result == {"a": {"a": 1}}
        redis.pipeline.assert_called_once_with(transaction=False)
        assert pipe.get.call_count == 3
        pipe.execute.assert_awaited_once()

    def test_store_failure_is_miss(self):
        redis = MagicMock()
        redis.get = AsyncMock(side_effect=RedisConnectionError("down"))
        redis.setex = AsyncMock(side_effect=RedisConnectionError("down"))
        pipe = MagicMock()
        pipe.execute = AsyncMock(side_effect=RedisConnectionError("down"))
        redis.pipeline.return_value = pipe
        store = RedisCacheStore(redis)

        assert _run(store.get("k")) is None
        assert _run(store.set("k", 1, 10)) is False
        assert _run(store.get_many(["k"])) == {}

    def test_cache_layer_falls_back_to_memory(self):
        layer = CacheLayer(redis_getter=lambda: None)

        async def scenario():
            await layer.set("k", {"v": 2}, ttl=60)
            return await layer.get("k"), await layer.stats()

        value, stats = _run(scenario())
        assert value == {"v": 2}
        assert stats["backend"] == "memory"

    def test_cache_layer_prefers_redis(self):
        redis = MagicMock()
        redis.get = AsyncMock(return_value='"hit"')
        layer = CacheLayer(redis_getter=lambda: redis)
        assert _run(layer.get("k")) == "hit"


# ─────────────────────────────────────────────────────────
# 5. cache-aside 编排测试
# ─────────────────────────────────────────────────────────

class TestOrchestrator:
    def test_hit_masks_producer_failure(self):
        orch = _orchestrator()
        producer = _producer(FetchOutcome.positive({"price": 10}), RuntimeError("upstream down"))

        async def scenario():
            first = await orch.get_or_compute("k", 60, producer)
            second = await orch.get_or_compute("k", 60, producer)
            return first, second

        first, second = _run(scenario())
        assert first == second == {"price": 10}
        assert len(producer.calls) == 1

    def test_invalid_outcome_not_cached(self):
        from feed_service.layers.outcome import all_signal_absent
        store = _SpyStore()
        orch = _orchestrator(store)
        quotes = [{"price": 0}, {"price": 0}]

        async def produce():
            produce.calls += 1
            if all_signal_absent(quotes, "price"):
                return FetchOutcome.invalid("all-zero prices")
            return FetchOutcome.positive(quotes)

        produce.calls = 0

        async def scenario():
            first = await orch.get_or_compute("k", 60, produce, default=[])
            cached = await store.get("k")
            second = await orch.get_or_compute("k", 60, produce, default=[])
            return first, cached, second

        first, cached, second = _run(scenario())
        assert first == [] and second == []
        assert cached is None
        assert store.set_calls == []
        assert produce.calls == 2

    def test_negative_outcome_cached(self):
        store = _SpyStore()
        orch = _orchestrator(store)
        producer = _producer(FetchOutcome.negative(), FetchOutcome.positive("late"))

        async def scenario():
            first = await orch.resolve("k", 60, producer, negative_ttl=15)
            second = await orch.resolve("k", 60, producer, negative_ttl=15)
            return first, second

        first, second = _run(scenario())
        assert first.kind is OutcomeKind.NEGATIVE
        assert second.kind is OutcomeKind.NEGATIVE
        assert len(producer.calls) == 1
        assert store.set_calls == [("k", 15)]

    def test_negative_returns_default(self):
        orch = _orchestrator()
        assert _run(orch.get_or_compute("k", 60, _producer(FetchOutcome.negative()), default="none")) == "none"

    def test_producer_exception_not_cached(self):
        store = _SpyStore()
        orch = _orchestrator(store)
        producer = _producer(TimeoutError("timed out"), FetchOutcome.positive(1))

        async def scenario():
            first = await orch.get_or_compute("k", 60, producer)
            second = await orch.get_or_compute("k", 60, producer)
            return first, second

        assert _run(scenario()) == (None, 1)
        assert store.set_calls == [("k", 60)]

    def test_non_outcome_result_treated_as_invalid(self):
        store = _SpyStore()
        orch = _orchestrator(store)

        async def produce():
            return {"raw": "dict"}

        outcome = _run(orch.resolve("k", 60, produce))
        assert outcome.kind is OutcomeKind.INVALID
        assert store.set_calls == []

    def test_corrupt_entry_refetched(self):
        store = _SpyStore()
        _put_raw(store, "k", "garbage{")
        orch = _orchestrator(store)
        producer = _producer(FetchOutcome.positive("fresh"))

        assert _run(orch.get_or_compute("k", 60, producer)) == "fresh"
        assert len(producer.calls) == 1
        assert _run(store.get("k")) == {"kind": "positive", "value": "fresh"}

    def test_store_unreachable_falls_through(self):
        redis = MagicMock()
        redis.get = AsyncMock(side_effect=RedisConnectionError("down"))
        redis.setex = AsyncMock(side_effect=RedisConnectionError("down"))
        orch = _orchestrator(RedisCacheStore(redis))
        assert _run(orch.get_or_compute("k", 60, _producer(FetchOutcome.positive(7)))) == 7

    def test_single_flight_shares_producer(self):
        orch = _orchestrator()
        calls = []

        async def slow():
            calls.append(1)
            await asyncio.sleep(0.02)
            return FetchOutcome.positive("shared")

        async def scenario():
            return await asyncio.gather(*[orch.get_or_compute("k", 60, slow) for _ in range(5)])

        assert _run(scenario()) == ["shared"] * 5
        assert len(calls) == 1

    def test_single_flight_disabled(self):
        orch = _orchestrator(single_flight=False)
        calls = []

        async def slow():
            calls.append(1)
            await asyncio.sleep(0.02)
            return FetchOutcome.positive("dup")

        async def scenario():
            return await asyncio.gather(orch.get_or_compute("k", 60, slow), orch.get_or_compute("k", 60, slow))

        assert _run(scenario()) == ["dup", "dup"]
        assert len(calls) == 2

    def test_single_flight_released_after_failure(self):
        orch = _orchestrator()
        producer = _producer(RuntimeError("boom"), FetchOutcome.positive("ok"))

        async def scenario():
            first = await orch.get_or_compute("k", 60, producer)
            second = await orch.get_or_compute("k", 60, producer)
            return first, second, dict(orch._inflight)

        first, second, inflight = _run(scenario())
        assert first is None and second == "ok"
        assert inflight == {}

    def test_single_flight_cancelled_leader_releases_waiters(self):
        store = _SpyStore()
        orch = _orchestrator(store)
        started = []

        async def hang():
            started.append(1)
            await asyncio.sleep(10)
            return FetchOutcome.positive("never")

        async def scenario():
            leader = asyncio.create_task(orch.resolve("k", 60, hang))
            await asyncio.sleep(0)
            waiter = asyncio.create_task(orch.resolve("k", 60, hang))
            await asyncio.sleep(0)
            leader.cancel()
            with pytest.raises(asyncio.CancelledError):
                await leader
            return await waiter, dict(orch._inflight)

        outcome, inflight = _run(scenario())
        assert outcome.kind is OutcomeKind.INVALID
        assert inflight == {}
        assert store.set_calls == []
        assert len(started) == 1


# ─────────────────────────────────────────────────────────
# 6. 批量协调测试
# ─────────────────────────────────────────────────────────

def _coordinator(store=None, max_items=10, throttle_ms=0, sleep=None):
    from feed_service.layers.batch import BatchCoordinator
    kwargs = {"max_items": max_items, "throttle_ms": throttle_ms}
    if sleep is not None:
        kwargs["sleep"] = sleep
    return BatchCoordinator(_orchestrator(store), **kwargs)


def _key(item):
    return f"item:{item}"


class TestBatchCoordinator:
    def test_empty_input_no_io(self):
        store = _SpyStore()
        coord = _coordinator(store)
        producer_fn = AsyncMock()
        assert _run(coord.resolve_batch([], _key, 60, producer_fn)) == {}
        assert store.get_many_calls == []
        producer_fn.assert_not_awaited()

    def test_misses_single_multiget_and_throttled_calls(self):
        store = _SpyStore()
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)

        coord = _coordinator(store, throttle_ms=100, sleep=fake_sleep)
        seen = []

        async def producer_fn(item):
            seen.append(item)
            return FetchOutcome.positive({"id": item})

        result = _run(coord.resolve_batch(["c", "a", "b", "d"], _key, 60, producer_fn))

        assert len(store.get_many_calls) == 1
        assert store.get_many_calls[0] == ["item:a", "item:b", "item:c", "item:d"]
        assert seen == ["a", "b", "c", "d"]
        assert sleeps == [0.1, 0.1, 0.1]
        assert set(result) == {"a", "b", "c", "d"}

    def test_throttle_spacing_real_time(self):
        coord = _coordinator(throttle_ms=30)
        starts = []

        async def producer_fn(item):
            starts.append(time.monotonic())
            return FetchOutcome.positive(item)

        _run(coord.resolve_batch(["x", "y", "z"], _key, 60, producer_fn))

        assert len(starts) == 3
        assert starts[-1] - starts[0] >= 2 * 0.030 - 0.005

    def test_cap_applied_before_any_io(self):
        store = _SpyStore()
        coord = _coordinator(store, max_items=10)
        seen = []

        async def producer_fn(item):
            seen.append(item)
            return FetchOutcome.positive(item)

        items = [f"id{n:02d}" for n in range(12, 0, -1)]
        result = _run(coord.resolve_batch(items, _key, 60, producer_fn))

        assert len(store.get_many_calls[0]) == 10
        assert "id11" not in seen and "id12" not in seen
        assert set(result) == {f"id{n:02d}" for n in range(1, 11)}

    def test_hits_skip_upstream_and_negative_hits_not_refetched(self):
        from feed_service.layers.outcome import encode_entry
        store = _SpyStore()

        async def seed():
            await store.set(_key("a"), encode_entry(FetchOutcome.positive("cached-a")), 60)
            await store.set(_key("b"), encode_entry(FetchOutcome.negative()), 60)

        _run(seed())
        coord = _coordinator(store)
        seen = []

        async def producer_fn(item):
            seen.append(item)
            return FetchOutcome.positive(f"fresh-{item}")

        result = _run(coord.resolve_batch(["a", "b", "c"], _key, 60, producer_fn))

        assert result == {"a": "cached-a", "c": "fresh-c"}
        assert seen == ["c"]

    def test_item_failure_isolated(self):
        coord = _coordinator()

        async def producer_fn(item):
            if item == "b":
                raise ConnectionError("reset by peer")
            if item == "c":
                return FetchOutcome.invalid("empty")
            return FetchOutcome.positive(item.upper())

        result = _run(coord.resolve_batch(["a", "b", "c", "d"], _key, 60, producer_fn))
        assert result == {"a": "A", "d": "D"}

    def test_failed_items_retried_next_batch(self):
        store = _SpyStore()
        coord = _coordinator(store)
        attempts = {"b": 0}

        async def producer_fn(item):
            if item == "b":
                attempts["b"] += 1
                if attempts["b"] == 1:
                    raise TimeoutError("slow")
            return FetchOutcome.positive(item)

        first = _run(coord.resolve_batch(["a", "b"], _key, 60, producer_fn))
        second = _run(coord.resolve_batch(["a", "b"], _key, 60, producer_fn))
        assert first == {"a": "a"}
        assert second == {"a": "a", "b": "b"}
        assert attempts["b"] == 2

    def test_normalize_case_folds_and_dedupes(self):
        coord = _coordinator(max_items=3)
        assert coord.normalize(["AE01", "ae01 ", "", "c", "b", "a"]) == ["a", "ae01", "b"]
