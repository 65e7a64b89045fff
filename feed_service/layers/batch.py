"""
批量查询协调
一次 pipeline 读取全部条目缓存，仅对未命中的条目按固定间隔顺序调用上游。
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from feed_service.config import settings
from feed_service.layers.keys import normalize_ids
from feed_service.layers.orchestrator import CacheAsideOrchestrator, get_orchestrator
from feed_service.layers.outcome import FetchOutcome, OutcomeKind, decode_entry

logger = logging.getLogger(__name__)


class BatchCoordinator:
    """按条目缓存的批量解析器"""

    def __init__(
        self,
        orchestrator: CacheAsideOrchestrator,
        max_items: int = 10,
        throttle_ms: int = 100,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._orch = orchestrator
        self._max_items = max_items
        self._throttle_ms = throttle_ms
        self._sleep = sleep

    def normalize(self, items: Iterable[str], case_insensitive: bool = True) -> List[str]:
        """规范化、去重、排序后截断到批量上限"""
        return normalize_ids(items, case_insensitive)[: self._max_items]

    async def resolve_batch(
        self,
        items: Iterable[str],
        key_fn: Callable[[str], str],
        ttl: int,
        producer_fn: Callable[[str], Awaitable[FetchOutcome]],
        throttle_ms: Optional[int] = None,
        negative_ttl: Optional[int] = None,
        case_insensitive: bool = True,
    ) -> Dict[str, Any]:
        """
        解析一批条目，返回 {条目: 值}

        无数据的条目（负缓存、上游失败、校验失败）不出现在结果中；
        单个条目失败不会中断整批。

        Args:
            items: 请求的条目标识
            key_fn: 条目 -> 缓存键
            ttl: 有效结果的缓存 TTL（秒）
            producer_fn: 条目 -> 单次上游调用
            throttle_ms: 相邻两次上游调用之间的间隔，默认取构造参数
            negative_ttl: 负缓存 TTL，默认与 ttl 相同
        """
        ids = self.normalize(items, case_insensitive)
        if not ids:
            return {}
        delay = (self._throttle_ms if throttle_ms is None else throttle_ms) / 1000.0

        keys = [key_fn(item) for item in ids]
        cached = await self._orch.store.get_many(keys)

        results: Dict[str, Any] = {}
        to_fetch: List[str] = []
        for item, key in zip(ids, keys):
            outcome = decode_entry(cached.get(key))
            if outcome is None:
                to_fetch.append(item)
            elif outcome.kind is OutcomeKind.POSITIVE:
                results[item] = outcome.value
            # NEGATIVE：已确认不存在，跳过重新获取

        logger.debug(
            f"批量查询: 请求 {len(ids)}，缓存命中 {len(ids) - len(to_fetch)}，待获取 {len(to_fetch)}"
        )

        for index, item in enumerate(to_fetch):
            outcome = await self._orch.resolve(
                key_fn(item),
                ttl,
                lambda item=item: producer_fn(item),
                negative_ttl=negative_ttl,
            )
            if outcome.is_positive:
                results[item] = outcome.value
            if index < len(to_fetch) - 1:
                await self._sleep(delay)

        return results


# ── 模块级别单例 ──────────────────────────────────────────
_coordinator: Optional[BatchCoordinator] = None


def get_batch_coordinator() -> BatchCoordinator:
    global _coordinator
    if _coordinator is None:
        _coordinator = BatchCoordinator(
            get_orchestrator(),
            max_items=settings.BATCH_MAX_ITEMS,
            throttle_ms=settings.BATCH_THROTTLE_MS,
        )
    return _coordinator
