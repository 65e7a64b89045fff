"""
飞机元数据服务
Wingbits 只提供逐条查询接口：每架飞机单独缓存，批量请求经协调器合并读缓存、节流获取。
"""

import logging
import re
from typing import Any, Dict, List, Optional

from feed_service.config import settings
from feed_service.layers.acquisition import AcquisitionLayer, get_acquisition_layer
from feed_service.layers.batch import BatchCoordinator, get_batch_coordinator
from feed_service.layers.keys import item_key

logger = logging.getLogger(__name__)

AIRCRAFT_CACHE_NS = "military:aircraft:v1"

# ICAO 24 位地址：6 位十六进制
_ICAO24_RE = re.compile(r"^[0-9a-f]{6}$")


def aircraft_key(icao24: str) -> str:
    return item_key(AIRCRAFT_CACHE_NS, icao24, case_insensitive=True)


class AircraftService:
    """飞机元数据业务服务"""

    def __init__(
        self,
        coordinator: Optional[BatchCoordinator] = None,
        acquisition: Optional[AcquisitionLayer] = None,
    ):
        self._batch = coordinator or get_batch_coordinator()
        self._acq = acquisition or get_acquisition_layer()

    async def get_aircraft_details_batch(self, icao24s: List[str]) -> Dict[str, Any]:
        """
        批量获取飞机元数据

        Returns:
            {results: {icao24: details}, fetched, requested, configured}
        """
        if not settings.WINGBITS_API_KEY:
            return {"results": {}, "fetched": 0, "requested": 0, "configured": False}

        valid = [i for i in icao24s if _ICAO24_RE.match((i or "").strip().lower())]
        if len(valid) < len(icao24s):
            logger.warning(f"丢弃 {len(icao24s) - len(valid)} 个非法 ICAO24 地址")
        ids = self._batch.normalize(valid)
        results = await self._batch.resolve_batch(
            ids,
            key_fn=aircraft_key,
            ttl=settings.AIRCRAFT_CACHE_TTL,
            producer_fn=self._acq.fetch_aircraft_details,
            throttle_ms=settings.BATCH_THROTTLE_MS,
            negative_ttl=settings.AIRCRAFT_NEGATIVE_CACHE_TTL,
        )
        logger.info(f"飞机元数据批量查询: 请求 {len(ids)}，返回 {len(results)}")
        return {
            "results": results,
            "fetched": len(results),
            "requested": len(ids),
            "configured": True,
        }


# ── 模块级别单例 ──────────────────────────────────────────
_aircraft_service: Optional[AircraftService] = None


def get_aircraft_service() -> AircraftService:
    global _aircraft_service
    if _aircraft_service is None:
        _aircraft_service = AircraftService()
    return _aircraft_service
