"""
Cache-aside 获取编排

  1. 读缓存，命中直接返回（不调用上游）
  2. 未命中时调用 producer；producer 抛出异常视为未命中，不写缓存
  3. INVALID 结果不写缓存，下次请求立即重试
  4. POSITIVE / NEGATIVE 结果按 TTL 写回缓存后返回

同一进程内对同一个键的并发未命中共享一次 producer 调用（single-flight）；
跨进程不做去重，缓存 TTL 与结果校验是唯一的防污染手段。
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from feed_service.config import settings
from feed_service.layers.cache import CacheStore, get_cache_layer
from feed_service.layers.outcome import FetchOutcome, OutcomeKind, decode_entry, encode_entry

logger = logging.getLogger(__name__)

Producer = Callable[[], Awaitable[FetchOutcome]]


class CacheAsideOrchestrator:
    """缓存优先的获取编排器，对调用方永不抛出异常"""

    def __init__(self, store: CacheStore, single_flight: bool = True):
        self._store = store
        self._single_flight = single_flight
        self._inflight: Dict[str, "asyncio.Future[FetchOutcome]"] = {}

    @property
    def store(self) -> CacheStore:
        return self._store

    async def lookup(self, key: str) -> Optional[FetchOutcome]:
        """只读缓存，不触发上游"""
        return decode_entry(await self._store.get(key))

    async def resolve(
        self,
        key: str,
        ttl: int,
        producer: Producer,
        negative_ttl: Optional[int] = None,
    ) -> FetchOutcome:
        """返回缓存或新获取的三态结果"""
        cached = await self.lookup(key)
        if cached is not None:
            return cached

        if not self._single_flight:
            return await self._compute(key, ttl, producer, negative_ttl)

        pending = self._inflight.get(key)
        if pending is not None:
            logger.debug(f"复用进行中的上游请求: {key}")
            return await asyncio.shield(pending)

        future: "asyncio.Future[FetchOutcome]" = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            outcome = await self._compute(key, ttl, producer, negative_ttl)
            future.set_result(outcome)
            return outcome
        finally:
            self._inflight.pop(key, None)
            if not future.done():
                # 发起方被取消，等待者按失败处理
                future.set_result(FetchOutcome.invalid("cancelled"))

    async def get_or_compute(
        self,
        key: str,
        ttl: int,
        producer: Producer,
        negative_ttl: Optional[int] = None,
        default: Any = None,
    ) -> Any:
        """返回有效值；NEGATIVE / INVALID / 上游失败时返回 default"""
        outcome = await self.resolve(key, ttl, producer, negative_ttl)
        if outcome.is_positive:
            return outcome.value
        return default

    async def _compute(
        self,
        key: str,
        ttl: int,
        producer: Producer,
        negative_ttl: Optional[int],
    ) -> FetchOutcome:
        try:
            outcome = await producer()
        except Exception as exc:
            logger.warning(f"上游获取失败，不写入缓存: {key}: {exc}")
            return FetchOutcome.invalid(str(exc))

        if not isinstance(outcome, FetchOutcome):
            logger.warning(f"producer 返回了非 FetchOutcome 结果，不写入缓存: {key}")
            return FetchOutcome.invalid("unexpected producer result")

        if outcome.kind is OutcomeKind.INVALID:
            logger.info(f"上游结果未通过校验，不写入缓存: {key} ({outcome.reason})")
            return outcome

        entry_ttl = ttl
        if outcome.kind is OutcomeKind.NEGATIVE and negative_ttl:
            entry_ttl = negative_ttl
        await self._store.set(key, encode_entry(outcome), entry_ttl)
        return outcome


# ── 模块级别单例 ──────────────────────────────────────────
_orchestrator: Optional[CacheAsideOrchestrator] = None


def get_orchestrator() -> CacheAsideOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = CacheAsideOrchestrator(
            get_cache_layer(), single_flight=settings.SINGLE_FLIGHT_ENABLED
        )
    return _orchestrator
