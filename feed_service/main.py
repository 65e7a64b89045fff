"""
FeedService 行情与元数据缓存服务
独立 FastAPI 应用程序入口

启动方式:
    uvicorn feed_service.main:app --host 0.0.0.0 --port 8002
    python -m feed_service.main
"""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from feed_service import __version__
from feed_service.config import settings
from feed_service.db import init_redis, close_connections
from feed_service.models.response import ApiResponse
from feed_service.routers import health, market, military, cache

# ── 日志配置 ──────────────────────────────────────────────
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ── 生命周期管理 ──────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用启动/关闭生命周期钩子"""
    logger.info("=" * 60)
    logger.info(f"🚀 FeedService v{__version__} 启动中")
    logger.info(f"   Redis     : {settings.REDIS_HOST}:{settings.REDIS_PORT}")
    logger.info(f"   Batch     : max={settings.BATCH_MAX_ITEMS} throttle={settings.BATCH_THROTTLE_MS}ms")
    logger.info("=" * 60)

    # 初始化缓存连接（失败不阻断启动，降级运行）
    if await init_redis():
        logger.info("✅ 缓存连接就绪")
    else:
        logger.warning("⚠️ Redis 不可用，缓存降级为进程内存模式（多实例间不共享）")

    yield

    logger.info("🔄 缓存服务正在关闭...")
    await close_connections()
    logger.info("✅ 缓存服务已关闭")


# ── 应用实例 ──────────────────────────────────────────────
app = FastAPI(
    title="FeedService 行情与元数据缓存服务",
    description=(
        "为限流的第三方数据接口提供共享缓存：\n"
        "- 📈 加密货币 / 大宗商品报价（CoinGecko / Yahoo Finance）\n"
        "- ✈️ 飞机元数据批量查询（Wingbits）\n"
        "- 🗄️ Redis 共享缓存，含负缓存与结果校验\n\n"
        "**分层架构**\n"
        "```\n"
        "Acquisition Layer   ← 上游 HTTP 请求\n"
        "Cache Layer         ← Redis / 进程内存\n"
        "Orchestrator Layer  ← cache-aside 编排\n"
        "Batch Layer         ← 批量读缓存 + 节流获取\n"
        "```"
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS 中间件 ───────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── 请求计时中间件 ─────────────────────────────────────────
@app.middleware("http")
async def add_process_time(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    response.headers["X-Process-Time"] = f"{(time.time() - start) * 1000:.1f}ms"
    return response


# ── 全局异常处理 ──────────────────────────────────────────
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"未处理的异常: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content=ApiResponse.fail(error="内部服务错误", message=str(exc)).model_dump(),
    )


# ── 注册路由 ──────────────────────────────────────────────
app.include_router(health.router)
app.include_router(market.router)
app.include_router(military.router)
app.include_router(cache.router)


# ── 根路由 ───────────────────────────────────────────────
@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "FeedService",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


# ── 直接运行入口 ──────────────────────────────────────────
if __name__ == "__main__":
    uvicorn.run(
        "feed_service.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
