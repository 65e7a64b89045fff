"""
飞机元数据路由
POST /api/military/aircraft/batch   - 批量获取飞机元数据（单次最多 10 架）
"""

from typing import List

from fastapi import APIRouter
from pydantic import BaseModel, Field

from feed_service.models.response import AircraftBatch, ApiResponse
from feed_service.services.aircraft_service import get_aircraft_service

router = APIRouter(prefix="/api/military", tags=["飞机元数据"])


class AircraftBatchRequest(BaseModel):
    icao24s: List[str] = Field(default_factory=list)


@router.post("/aircraft/batch", response_model=ApiResponse)
async def get_aircraft_details_batch(body: AircraftBatchRequest):
    """按 ICAO24 地址批量查询，超出上限的部分被丢弃"""
    data = AircraftBatch(**await get_aircraft_service().get_aircraft_details_batch(body.icao24s))
    if not data.configured:
        return ApiResponse.ok(data=data, message="Wingbits 未配置")
    return ApiResponse.ok(data=data)
