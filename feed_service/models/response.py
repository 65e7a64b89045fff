"""统一 API 响应模型"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ApiResponse(BaseModel):
    """标准 API 响应封装"""
    success: bool = True
    data: Optional[Any] = None
    message: str = ""
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None, message: str = "success") -> "ApiResponse":
        return cls(success=True, data=data, message=message)

    @classmethod
    def fail(cls, error: str, message: str = "failed") -> "ApiResponse":
        return cls(success=False, error=error, message=message)


# ── 业务数据载荷 ──────────────────────────────────────────

class QuoteList(BaseModel):
    """报价列表；上游失败时为空列表而非错误"""
    quotes: List[Dict[str, Any]] = Field(default_factory=list)


class AircraftBatch(BaseModel):
    """批量飞机元数据；无数据的条目直接缺省"""
    results: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    fetched: int = 0
    requested: int = 0
    configured: bool = True
