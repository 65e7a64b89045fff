"""
缓存存储适配层
优先级：Redis（共享） → 进程内存（Redis 不可用时降级）

对上层只暴露 get / set / get_many 三个操作；存储故障与反序列化失败一律按未命中处理。
"""

import json
import logging
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional, Protocol, Sequence, Tuple

from redis.asyncio import Redis
from redis.exceptions import RedisError

from feed_service.config import settings
from feed_service.db import get_redis

logger = logging.getLogger(__name__)


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=str)


def _loads(key: str, raw: Any) -> Optional[Any]:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError) as exc:
        logger.warning(f"缓存值反序列化失败，按未命中处理: {key}: {exc}")
        return None


class CacheStore(Protocol):
    """带 TTL 的键值存储协议"""

    async def get(self, key: str) -> Optional[Any]:
        ...

    async def set(self, key: str, value: Any, ttl: int) -> bool:
        ...

    async def get_many(self, keys: Sequence[str]) -> Dict[str, Any]:
        """一次往返批量读取；结果只包含命中且可解析的键"""
        ...

    async def stats(self) -> dict:
        ...


class RedisCacheStore:
    """Redis 存储：GET / SETEX / 非事务 pipeline 批量 GET"""

    def __init__(self, redis: Redis):
        self._redis = redis

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self._redis.get(key)
        except RedisError as exc:
            logger.warning(f"Redis 读取失败: {key}: {exc}")
            return None
        if raw is None:
            logger.debug(f"缓存未命中（Redis）: {key}")
            return None
        logger.debug(f"缓存命中（Redis）: {key}")
        return _loads(key, raw)

    async def set(self, key: str, value: Any, ttl: int) -> bool:
        try:
            await self._redis.setex(key, ttl, _dumps(value))
        except RedisError as exc:
            logger.warning(f"Redis 写入失败: {key}: {exc}")
            return False
        logger.debug(f"缓存写入（Redis）: {key} (TTL: {ttl}s)")
        return True

    async def get_many(self, keys: Sequence[str]) -> Dict[str, Any]:
        if not keys:
            return {}
        try:
            pipe = self._redis.pipeline(transaction=False)
            for key in keys:
                pipe.get(key)
            raws = await pipe.execute()
        except RedisError as exc:
            logger.warning(f"Redis 批量读取失败（{len(keys)} 个键）: {exc}")
            return {}

        result: Dict[str, Any] = {}
        for key, raw in zip(keys, raws):
            value = _loads(key, raw)
            if value is not None:
                result[key] = value
        logger.debug(f"批量读取（Redis）: {len(result)}/{len(keys)} 命中")
        return result

    async def stats(self) -> dict:
        try:
            return {"backend": "redis", "keys": await self._redis.dbsize(), "status": "healthy"}
        except RedisError as exc:
            return {"backend": "redis", "status": "error", "error": str(exc)}


class MemoryCacheStore:
    """进程内 TTL 存储，按 JSON 序列化保存以保持与 Redis 相同的语义"""

    def __init__(self, max_entries: int = 1024, clock: Callable[[], float] = time.monotonic):
        self._data: "OrderedDict[str, Tuple[float, str]]" = OrderedDict()
        self._max_entries = max_entries
        self._clock = clock

    def _read(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at, raw = entry
        if expires_at <= self._clock():
            del self._data[key]
            return None
        return raw

    async def get(self, key: str) -> Optional[Any]:
        return _loads(key, self._read(key))

    async def set(self, key: str, value: Any, ttl: int) -> bool:
        self._data[key] = (self._clock() + ttl, _dumps(value))
        self._data.move_to_end(key)
        while len(self._data) > self._max_entries:
            self._data.popitem(last=False)
        return True

    async def get_many(self, keys: Sequence[str]) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        for key in keys:
            value = _loads(key, self._read(key))
            if value is not None:
                result[key] = value
        return result

    async def stats(self) -> dict:
        return {"backend": "memory", "keys": len(self._data), "status": "healthy"}


class CacheLayer:
    """缓存层，自动根据可用连接选择后端"""

    def __init__(
        self,
        redis_getter: Callable[[], Optional[Redis]] = get_redis,
        fallback: Optional[MemoryCacheStore] = None,
    ):
        self._redis_getter = redis_getter
        self._fallback = fallback or MemoryCacheStore(settings.MEMORY_CACHE_MAX_ENTRIES)

    def _backend(self):
        redis = self._redis_getter()
        if redis is not None:
            return RedisCacheStore(redis)
        return self._fallback

    async def get(self, key: str) -> Optional[Any]:
        return await self._backend().get(key)

    async def set(self, key: str, value: Any, ttl: int = None) -> bool:
        if ttl is None:
            ttl = settings.CACHE_TTL
        return await self._backend().set(key, value, ttl)

    async def get_many(self, keys: Sequence[str]) -> Dict[str, Any]:
        return await self._backend().get_many(list(keys))

    async def stats(self) -> dict:
        return await self._backend().stats()


# ── 模块级别单例 ──────────────────────────────────────────
_cache: Optional[CacheLayer] = None


def get_cache_layer() -> CacheLayer:
    global _cache
    if _cache is None:
        _cache = CacheLayer()
    return _cache
