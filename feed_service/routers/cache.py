"""
缓存管理路由
GET  /api/cache/stats     - 缓存统计
"""

from fastapi import APIRouter

from feed_service.models.response import ApiResponse
from feed_service.layers.cache import get_cache_layer

router = APIRouter(prefix="/api/cache", tags=["缓存管理"])


@router.get("/stats", response_model=ApiResponse)
async def cache_stats():
    """获取当前缓存后端统计信息"""
    stats = await get_cache_layer().stats()
    return ApiResponse.ok(data=stats)
