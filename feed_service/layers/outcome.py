"""
上游获取结果（三态）

  POSITIVE  有效数据，写入缓存
  NEGATIVE  上游确认不存在（如 HTTP 404），写入缓存以抑制重复查询
  INVALID   空数据 / 校验失败 / 上游异常，不写缓存，下次请求立即重试
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, Optional

logger = logging.getLogger(__name__)


class OutcomeKind(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    INVALID = "invalid"


@dataclass(frozen=True)
class FetchOutcome:
    kind: OutcomeKind
    value: Any = None
    reason: str = ""

    @classmethod
    def positive(cls, value: Any) -> "FetchOutcome":
        return cls(OutcomeKind.POSITIVE, value)

    @classmethod
    def negative(cls, value: Any = None) -> "FetchOutcome":
        return cls(OutcomeKind.NEGATIVE, value)

    @classmethod
    def invalid(cls, reason: str = "") -> "FetchOutcome":
        return cls(OutcomeKind.INVALID, None, reason)

    @property
    def is_positive(self) -> bool:
        return self.kind is OutcomeKind.POSITIVE

    @property
    def cacheable(self) -> bool:
        return self.kind is not OutcomeKind.INVALID


# ── 缓存条目编解码 ────────────────────────────────────────

def encode_entry(outcome: FetchOutcome) -> Dict[str, Any]:
    """将可缓存的结果编码为 JSON 信封"""
    if not outcome.cacheable:
        raise ValueError("invalid outcome must not be cached")
    return {"kind": outcome.kind.value, "value": outcome.value}


def decode_entry(raw: Any) -> Optional[FetchOutcome]:
    """解码缓存信封；格式不符视为未命中（返回 None）"""
    if raw is None:
        return None
    if not isinstance(raw, dict) or "value" not in raw:
        logger.debug(f"缓存条目格式异常，按未命中处理: {type(raw).__name__}")
        return None
    kind = raw.get("kind")
    if kind == OutcomeKind.POSITIVE.value:
        return FetchOutcome.positive(raw["value"])
    if kind == OutcomeKind.NEGATIVE.value:
        return FetchOutcome.negative(raw["value"])
    logger.debug(f"缓存条目类型未知，按未命中处理: {kind!r}")
    return None


# ── 领域校验辅助 ──────────────────────────────────────────

def all_signal_absent(items: Iterable[Dict[str, Any]], field: str) -> bool:
    """
    所有条目的主数值字段均为 0 / 缺失时返回 True

    用于识别上游降级（例如行情接口返回全零价格），此类结果应视为失败而不缓存。
    空列表同样视为无信号。
    """
    for item in items:
        value = item.get(field)
        if value not in (None, 0, 0.0):
            return False
    return True
