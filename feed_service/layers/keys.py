"""
缓存键生成
同一组标识符无论请求顺序如何，都必须得到逐字节相同的缓存键，
这样不同顺序的请求才能共享同一条缓存。
"""

import hashlib
from typing import Iterable, List

CACHE_KEY_SEP = ":"
_ID_JOINER = ","
_MAX_KEY_LEN = 200


def normalize_ids(ids: Iterable[str], case_insensitive: bool = False) -> List[str]:
    """去空白、（可选）转小写、去空、去重并按字典序排序"""
    cleaned = set()
    for raw in ids:
        item = (raw or "").strip()
        if case_insensitive:
            item = item.lower()
        if item:
            cleaned.add(item)
    return sorted(cleaned)


def _make_key(namespace: str, *parts: str) -> str:
    raw = CACHE_KEY_SEP.join([namespace] + list(parts))
    if len(raw) > _MAX_KEY_LEN:
        raw = namespace + CACHE_KEY_SEP + hashlib.md5(raw.encode()).hexdigest()
    return raw


def build_key(namespace: str, ids: Iterable[str], case_insensitive: bool = False) -> str:
    """
    生成与顺序无关的集合缓存键

    例：build_key("market:crypto:v1", ["solana", "bitcoin"])
        -> "market:crypto:v1:bitcoin,solana"
    """
    return _make_key(namespace, _ID_JOINER.join(normalize_ids(ids, case_insensitive)))


def item_key(namespace: str, item: str, case_insensitive: bool = False) -> str:
    """单个条目的缓存键（批量查询按条目缓存）"""
    normalized = (item or "").strip()
    if case_insensitive:
        normalized = normalized.lower()
    return _make_key(namespace, normalized)
