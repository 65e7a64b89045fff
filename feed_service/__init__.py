"""
FeedService 行情与元数据缓存服务
从限流、不稳定的第三方 HTTP 接口获取易变数据，经共享缓存对外提供

架构分层：
  获取层   (Acquisition)   → CoinGecko / Yahoo Finance / Wingbits 上游请求
  缓存层   (Cache)         → Redis 共享缓存，不可用时降级为进程内存
  编排层   (Orchestrator)  → cache-aside 获取、结果校验、负缓存
  批量层   (Batch)         → pipeline 批量读缓存 + 节流顺序获取
"""

__version__ = "1.0.0"
