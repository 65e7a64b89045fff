"""
行情/元数据缓存服务配置模块
支持从环境变量读取配置，自动检测 Docker 容器环境并启用服务发现
"""

import os
from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _is_docker() -> bool:
    """检测当前是否运行在 Docker 容器内"""
    return (
        os.path.exists("/.dockerenv")
        or os.environ.get("DOCKER_CONTAINER", "").lower() in ("1", "true", "yes")
    )


def _default_redis_host() -> str:
    """Docker 环境使用服务名 'redis'，本地使用 'localhost'"""
    return "redis" if _is_docker() else "localhost"


_DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)


class FeedServiceSettings(BaseSettings):
    """缓存服务配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── 基础配置 ──────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=8002)
    DEBUG: bool = Field(default=False)
    ALLOWED_ORIGINS: List[str] = Field(
        default_factory=lambda: ["*"]
    )

    # ── Redis 配置（支持服务发现） ─────────────────────────
    REDIS_HOST: str = Field(default_factory=_default_redis_host)
    REDIS_PORT: int = Field(default=6379)
    REDIS_PASSWORD: str = Field(default="")
    REDIS_DB: int = Field(default=0)
    REDIS_ENABLED: bool = Field(default=True)
    REDIS_MAX_CONNECTIONS: int = Field(default=20)
    REDIS_SOCKET_TIMEOUT: float = Field(default=5.0)

    @property
    def REDIS_URL(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    # ── 上游数据源配置 ─────────────────────────────────────
    UPSTREAM_TIMEOUT: float = Field(default=10.0)   # 单次上游请求超时（秒）
    UPSTREAM_USER_AGENT: str = Field(default=_DEFAULT_USER_AGENT)
    COINGECKO_BASE_URL: str = Field(default="https://api.coingecko.com/api/v3")
    COINGECKO_API_KEY: str = Field(default="")
    YAHOO_BASE_URL: str = Field(default="https://query1.finance.yahoo.com")
    WINGBITS_BASE_URL: str = Field(default="https://customer-api.wingbits.com/v1")
    WINGBITS_API_KEY: str = Field(default="")

    # ── 缓存配置 ──────────────────────────────────────────
    CACHE_TTL: int = Field(default=300)                       # 通用缓存 TTL（秒）
    CRYPTO_CACHE_TTL: int = Field(default=300)                # CoinGecko 限流严格
    COMMODITY_CACHE_TTL: int = Field(default=300)
    AIRCRAFT_CACHE_TTL: int = Field(default=24 * 60 * 60)
    AIRCRAFT_NEGATIVE_CACHE_TTL: int = Field(default=24 * 60 * 60)
    MEMORY_CACHE_MAX_ENTRIES: int = Field(default=1024)       # Redis 不可用时的内存降级容量

    # ── 批量查询配置 ──────────────────────────────────────
    BATCH_MAX_ITEMS: int = Field(default=10)
    BATCH_THROTTLE_MS: int = Field(default=100)
    SINGLE_FLIGHT_ENABLED: bool = Field(default=True)

    # ── 日志配置 ──────────────────────────────────────────
    LOG_LEVEL: str = Field(default="INFO")


@lru_cache
def get_settings() -> FeedServiceSettings:
    """获取全局配置（单例）"""
    return FeedServiceSettings()


settings = get_settings()
