"""
动态 Flag：按（比赛, 题目, 队伍）生成一次，之后重复渲染（含重置）都复用同一个值

存储通过 DynamicFlagStore 注入：默认 Redis（SET NX 语义），测试使用内存实现
"""

from __future__ import annotations

import threading
import uuid
from typing import Any, Callable, Protocol

from apps.common.infra import redis_client
from apps.common.utils.redis_keys import dynamic_flag_key


class DynamicFlagStore(Protocol):
    def get_or_create(self, key: str, factory: Callable[[], str]) -> str:
        """已有值直接返回，否则写入 factory() 的结果并返回"""


class RedisFlagStore:
    """Redis 实现：不设过期时间，与三元组生命周期一致"""

    def get_or_create(self, key: str, factory: Callable[[], str]) -> str:
        return redis_client.get_or_set(key, factory())


class MemoryFlagStore:
    """进程内实现，用于测试或单机调试"""

    def __init__(self):
        self._values: dict[str, str] = {}
        self._lock = threading.Lock()

    def get_or_create(self, key: str, factory: Callable[[], str]) -> str:
        with self._lock:
            if key not in self._values:
                self._values[key] = factory()
            return self._values[key]

    def get(self, key: str):
        return self._values.get(key)


def generate_dynamic_flag(challenge_id: Any) -> str:
    """ctf{<题目 UUID 前 8 位>-<随机 12 位十六进制>}"""
    prefix = uuid.UUID(str(challenge_id)).hex[:8]
    return "ctf{%s-%s}" % (prefix, uuid.uuid4().hex[:12])


def provision_dynamic_flag(store: DynamicFlagStore, *, contest_id: Any, challenge_id: Any, team_id: Any) -> str:
    key = dynamic_flag_key(contest_id, challenge_id, team_id)
    return store.get_or_create(key, lambda: generate_dynamic_flag(challenge_id))
