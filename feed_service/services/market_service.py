"""
行情数据服务
加密货币与大宗商品报价均为批量上游接口：一组标识对应一个缓存键、一次上游请求。
"""

import logging
from typing import Any, Dict, List, Optional

from feed_service.config import settings
from feed_service.layers.acquisition import AcquisitionLayer, get_acquisition_layer
from feed_service.layers.keys import build_key, normalize_ids
from feed_service.layers.orchestrator import CacheAsideOrchestrator, get_orchestrator
from feed_service.layers.outcome import FetchOutcome, all_signal_absent

logger = logging.getLogger(__name__)

CRYPTO_CACHE_NS = "market:crypto:v1"
COMMODITY_CACHE_NS = "market:commodities:v1"

# 默认跟踪的币种（CoinGecko id → 展示信息）
CRYPTO_META: Dict[str, Dict[str, str]] = {
    "bitcoin": {"name": "Bitcoin", "symbol": "BTC"},
    "ethereum": {"name": "Ethereum", "symbol": "ETH"},
    "solana": {"name": "Solana", "symbol": "SOL"},
    "ripple": {"name": "XRP", "symbol": "XRP"},
}

_SPARKLINE_POINTS = 48


def _trim_sparkline(prices: Optional[List[float]]) -> List[float]:
    prices = prices or []
    return prices[-_SPARKLINE_POINTS:] if len(prices) > 24 else prices


def _quote_payload(value: Any) -> Dict[str, Any]:
    """缓存值形状不符（如旧版本写入的列表）时按空结果返回"""
    if isinstance(value, dict) and isinstance(value.get("quotes"), list) \
            and all(isinstance(q, dict) for q in value["quotes"]):
        return value
    if value is not None:
        logger.warning(f"报价缓存值格式异常，按空结果返回: {type(value).__name__}")
    return {"quotes": []}


class MarketService:
    """行情业务服务"""

    def __init__(
        self,
        orchestrator: Optional[CacheAsideOrchestrator] = None,
        acquisition: Optional[AcquisitionLayer] = None,
    ):
        self._orch = orchestrator or get_orchestrator()
        self._acq = acquisition or get_acquisition_layer()

    # ── 加密货币 ──────────────────────────────────────────

    async def list_crypto_quotes(self, ids: List[str]) -> Dict[str, Any]:
        """
        获取加密货币报价

        Args:
            ids: CoinGecko 币种 id，为空时使用默认币种
        """
        coin_ids = normalize_ids(ids, case_insensitive=True) or sorted(CRYPTO_META)
        key = build_key(CRYPTO_CACHE_NS, coin_ids)

        async def producer() -> FetchOutcome:
            items = await self._acq.fetch_crypto_markets(coin_ids)
            if not items:
                return FetchOutcome.invalid("CoinGecko returned no data")

            by_id = {item.get("id"): item for item in items}
            quotes = []
            for coin_id in coin_ids:
                coin = by_id.get(coin_id)
                if coin is None:
                    continue
                meta = CRYPTO_META.get(coin_id, {})
                quotes.append({
                    "name": meta.get("name") or coin.get("name") or coin_id,
                    "symbol": meta.get("symbol") or coin_id.upper(),
                    "price": coin.get("current_price") or 0,
                    "change": coin.get("price_change_percentage_24h") or 0,
                    "sparkline": _trim_sparkline((coin.get("sparkline_in_7d") or {}).get("price")),
                })

            if all_signal_absent(quotes, "price"):
                return FetchOutcome.invalid("CoinGecko returned all-zero prices")
            return FetchOutcome.positive({"quotes": quotes})

        result = await self._orch.get_or_compute(key, settings.CRYPTO_CACHE_TTL, producer)
        return _quote_payload(result)

    # ── 大宗商品 ──────────────────────────────────────────

    async def list_commodity_quotes(self, symbols: List[str]) -> Dict[str, Any]:
        """获取大宗商品期货报价（Yahoo 代码，如 GC=F / CL=F）"""
        tickers = normalize_ids(symbols)
        if not tickers:
            return {"quotes": []}
        key = build_key(COMMODITY_CACHE_NS, tickers)

        async def producer() -> FetchOutcome:
            batch = await self._acq.fetch_commodity_quotes(tickers)
            quotes = [
                {"symbol": s, "name": s, "display": s, **batch[s]}
                for s in tickers
                if s in batch
            ]
            if not quotes:
                return FetchOutcome.invalid("Yahoo returned no quotes")
            return FetchOutcome.positive({"quotes": quotes})

        result = await self._orch.get_or_compute(key, settings.COMMODITY_CACHE_TTL, producer)
        return _quote_payload(result)


# ── 模块级别单例 ──────────────────────────────────────────
_market_service: Optional[MarketService] = None


def get_market_service() -> MarketService:
    global _market_service
    if _market_service is None:
        _market_service = MarketService()
    return _market_service
