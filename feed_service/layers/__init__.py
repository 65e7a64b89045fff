"""
数据流分层架构
  Layer 1 – Acquisition  : 上游获取（每次调用一次 HTTP 请求）
  Layer 2 – Cache        : 缓存存储（Redis → 进程内存）
  Layer 3 – Orchestrator : cache-aside 编排（命中 / 获取 / 校验 / 写回）
  Layer 4 – Batch        : 批量协调（一次 pipeline 读取 + 节流获取）
"""
