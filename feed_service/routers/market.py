"""
行情路由
GET /api/market/crypto        - 加密货币报价
GET /api/market/commodities   - 大宗商品期货报价
"""

from typing import List

from fastapi import APIRouter, Query

from feed_service.models.response import ApiResponse, QuoteList
from feed_service.services.market_service import get_market_service

router = APIRouter(prefix="/api/market", tags=["行情"])


@router.get("/crypto", response_model=ApiResponse)
async def list_crypto_quotes(
    ids: List[str] = Query(default=[], description="CoinGecko 币种 id，可重复传参"),
):
    """获取加密货币报价（为空时返回默认币种）"""
    data = await get_market_service().list_crypto_quotes(ids)
    return ApiResponse.ok(data=QuoteList(**data))


@router.get("/commodities", response_model=ApiResponse)
async def list_commodity_quotes(
    symbols: List[str] = Query(default=[], description="Yahoo 期货代码，如 GC=F"),
):
    """获取大宗商品报价"""
    data = await get_market_service().list_commodity_quotes(symbols)
    return ApiResponse.ok(data=QuoteList(**data))
