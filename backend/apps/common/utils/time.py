"""
时间工具：统一使用感知时区的时间
"""

from __future__ import annotations

import datetime
from typing import Union


def to_timestamp(dt: datetime.datetime) -> int:
    """将 datetime 转为秒级时间戳，缺省时区则补齐 UTC"""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=datetime.timezone.utc)
    return int(dt.timestamp())


def from_timestamp(ts: Union[int, float]) -> datetime.datetime:
    """从时间戳创建 datetime（UTC）"""
    return datetime.datetime.fromtimestamp(float(ts), tz=datetime.timezone.utc)


def clamp(value: int | float, lower: int | float, upper: int | float):
    """把配置值限制在 [lower, upper] 区间内"""
    return max(lower, min(upper, value))
