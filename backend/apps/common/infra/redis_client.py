"""
Redis 客户端封装：
- 统一读取 settings 中的 Redis 配置
- get_or_set 承载必须一致的数据（动态 Flag），Redis 不可用时抛 CacheUnavailableError
"""

from __future__ import annotations

import os
from typing import Optional

import redis
from django.conf import settings

from apps.common.exceptions import CacheUnavailableError
from apps.common.infra.logger import get_logger

_logger = get_logger(__name__)


def _get_client() -> redis.Redis:
    """按 settings 构造 Redis 客户端（连接在首次命令时才建立）"""
    return redis.Redis(
        host=getattr(settings, "REDIS_HOST", "127.0.0.1"),
        port=int(getattr(settings, "REDIS_PORT", 6379)),
        db=int(getattr(settings, "REDIS_DB_CACHE", 0)),
        password=getattr(settings, "REDIS_PASSWORD", None) or None,
        decode_responses=True,
        socket_connect_timeout=float(os.getenv("REDIS_CONNECT_TIMEOUT", 0.2)),
        socket_timeout=float(os.getenv("REDIS_SOCKET_TIMEOUT", 0.5)),
    )


def get_or_set(key: str, value: str, ex: Optional[int] = None) -> str:
    """
    原子地“取已有值，否则写入 value”：

    - SET NX 成功 → 本次写入者，返回 value
    - SET NX 失败 → 已有其它写入者，读取并返回已有值
    - Redis 不可用 → CacheUnavailableError，调用方不得自行生成新值
    """
    client = _get_client()
    try:
        if client.set(key, value, nx=True, ex=ex):
            return value
        existing = client.get(key)
    except redis.RedisError as exc:
        _logger.warning("Redis get-or-set 失败", extra={"key": key})
        raise CacheUnavailableError() from exc
    if existing is None:
        # 键在 NX 与 GET 之间过期，按新值再写一次
        return get_or_set(key, value, ex=ex)
    return existing
