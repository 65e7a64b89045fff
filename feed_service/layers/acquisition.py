"""
上游数据获取层
封装 CoinGecko / Yahoo Finance / Wingbits 三个第三方 HTTP 接口。
每个方法只发起一次上游请求（批量接口一次请求覆盖全部标识），带超时与标识请求头；
本层从不读写缓存，失败以异常形式交由编排层处理。
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from feed_service.config import settings
from feed_service.layers.outcome import FetchOutcome

logger = logging.getLogger(__name__)


class UpstreamError(RuntimeError):
    """上游返回非预期状态或无法解析的响应"""


class AcquisitionLayer:
    """数据获取层：每次调用对应一次上游 HTTP 请求"""

    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        self._client = client

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=settings.UPSTREAM_TIMEOUT) as client:
            yield client

    @staticmethod
    def _headers(extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {"Accept": "application/json", "User-Agent": settings.UPSTREAM_USER_AGENT}
        if extra:
            headers.update(extra)
        return headers

    async def _get(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        async with self._session() as client:
            return await client.get(
                url,
                params=params,
                headers=self._headers(headers),
                timeout=settings.UPSTREAM_TIMEOUT,
            )

    @staticmethod
    def _json(resp: httpx.Response) -> Any:
        if not resp.is_success:
            raise UpstreamError(f"HTTP {resp.status_code} from {resp.request.url}")
        try:
            return resp.json()
        except ValueError as exc:
            raise UpstreamError(f"响应不是合法 JSON: {resp.request.url}") from exc

    # ── CoinGecko（批量） ─────────────────────────────────

    async def fetch_crypto_markets(self, ids: List[str]) -> List[Dict[str, Any]]:
        """获取加密货币行情（一次请求覆盖全部 id）"""
        extra = {"x-cg-demo-api-key": settings.COINGECKO_API_KEY} if settings.COINGECKO_API_KEY else None
        resp = await self._get(
            f"{settings.COINGECKO_BASE_URL}/coins/markets",
            params={
                "vs_currency": "usd",
                "ids": ",".join(ids),
                "order": "market_cap_desc",
                "sparkline": "true",
                "price_change_percentage": "24h",
            },
            headers=extra,
        )
        data = self._json(resp)
        if not isinstance(data, list):
            raise UpstreamError("CoinGecko 返回格式异常")
        return data

    # ── Yahoo Finance（批量） ─────────────────────────────

    async def fetch_commodity_quotes(self, symbols: List[str]) -> Dict[str, Dict[str, Any]]:
        """获取期货报价，返回 {symbol: {price, change, sparkline}}；缺失的 symbol 不出现"""
        resp = await self._get(
            f"{settings.YAHOO_BASE_URL}/v7/finance/spark",
            params={"symbols": ",".join(symbols), "range": "1d", "interval": "5m"},
        )
        data = self._json(resp)
        try:
            entries = data["spark"]["result"] or []
        except (KeyError, TypeError) as exc:
            raise UpstreamError("Yahoo spark 返回格式异常") from exc

        quotes: Dict[str, Dict[str, Any]] = {}
        for entry in entries:
            symbol = entry.get("symbol")
            responses = entry.get("response") or []
            if not symbol or not responses:
                continue
            meta = responses[0].get("meta") or {}
            price = meta.get("regularMarketPrice")
            if price is None:
                continue
            prev = meta.get("chartPreviousClose") or meta.get("previousClose")
            change = ((price - prev) / prev * 100) if prev else 0.0
            quote_blocks = (responses[0].get("indicators") or {}).get("quote") or [{}]
            closes = [c for c in (quote_blocks[0].get("close") or []) if c is not None]
            quotes[symbol] = {"price": price, "change": round(change, 4), "sparkline": closes}
        return quotes

    # ── Wingbits（逐条） ──────────────────────────────────

    async def fetch_aircraft_details(self, icao24: str) -> FetchOutcome:
        """
        获取单架飞机元数据

        HTTP 404 → NEGATIVE（确认不存在，可缓存）
        HTTP 200 → POSITIVE
        其他状态 / 网络错误 / 解析错误 → 抛出异常
        """
        resp = await self._get(
            f"{settings.WINGBITS_BASE_URL}/flights/details/{icao24}",
            headers={"x-api-key": settings.WINGBITS_API_KEY},
        )
        if resp.status_code == 404:
            logger.debug(f"Wingbits 未收录该飞机: {icao24}")
            return FetchOutcome.negative()
        data = self._json(resp)
        if not isinstance(data, dict):
            raise UpstreamError(f"Wingbits 返回格式异常: {icao24}")
        return FetchOutcome.positive(_map_aircraft(icao24, data))


def _map_aircraft(icao24: str, data: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "icao24": icao24,
        "registration": data.get("registration") or "",
        "manufacturer": data.get("manufacturerName") or "",
        "model": data.get("model") or "",
        "typecode": data.get("typecode") or "",
        "operator": data.get("operator") or "",
        "owner": data.get("owner") or "",
    }


# ── 模块级别单例 ──────────────────────────────────────────
_acquisition: Optional[AcquisitionLayer] = None


def get_acquisition_layer() -> AcquisitionLayer:
    global _acquisition
    if _acquisition is None:
        _acquisition = AcquisitionLayer()
    return _acquisition
