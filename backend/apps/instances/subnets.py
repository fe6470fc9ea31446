"""
子网分配：为每个运行实例分配一个不冲突的 10.x.y.0/24 私有网段

- 起点由（比赛, 题目, 队伍）三个 UUID 的字节折叠（循环左移 5 位后异或）得到，可复现且分散
- 候选空间：第二段 16..223，第三段 0..255，共 53248 个 /24
- 分配与占用在同一次写入中完成：写入运行在保存点内，未销毁实例上的 subnet 部分唯一约束
  冲突时回滚保存点并换下一个候选，扫描一整圈仍无空闲则抛 SubnetExhaustedError
"""

from __future__ import annotations

import uuid
from typing import Any, Callable, Iterator, Optional, TypeVar

from django.db import IntegrityError, transaction

from apps.common.exceptions import SubnetExhaustedError
from apps.common.infra.logger import get_logger, logger_extra

from .repo import InstanceRepo

logger = get_logger(__name__)

T = TypeVar("T")

SECOND_OCTET_START = 16
SECOND_OCTET_END = 223
SUBNET_SPACE = (SECOND_OCTET_END - SECOND_OCTET_START + 1) * 256
PROJECT_NAME_MAX_LENGTH = 96


def _as_uuid(value: Any) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


def subnet_seed(contest_id: Any, challenge_id: Any, team_id: Any) -> int:
    """把三个 UUID 的 48 个字节折叠成 32 位种子"""
    seed = 0
    for raw in (contest_id, challenge_id, team_id):
        for byte in _as_uuid(raw).bytes:
            seed = ((seed << 5) | (seed >> 27)) & 0xFFFFFFFF
            seed ^= byte
    return seed


def candidate_at(index: int) -> str:
    index %= SUBNET_SPACE
    second = SECOND_OCTET_START + index // 256
    third = index % 256
    return f"10.{second}.{third}.0/24"


def iter_candidates(seed: int) -> Iterator[str]:
    """从 seed 对应的位置开始线性扫描，回绕一整圈"""
    start = seed % SUBNET_SPACE
    for offset in range(SUBNET_SPACE):
        yield candidate_at(start + offset)


def subnet_host_ip(subnet: str, host_octet: int) -> str:
    """10.16.0.0/24 + 2 → 10.16.0.2；格式不合法时返回空串"""
    base = (subnet or "").split("/", 1)[0]
    parts = base.split(".")
    if len(parts) != 4:
        return ""
    try:
        octets = [int(part) for part in parts[:3]]
    except ValueError:
        return ""
    if any(octet < 0 or octet > 255 for octet in octets):
        return ""
    return "{}.{}.{}.{}".format(*octets, host_octet)


def compose_project_name(contest_id: Any, challenge_id: Any, team_id: Any) -> str:
    """ctf_<比赛前 8 位>_<题目前 8 位>_<队伍前 8 位>，重置前后保持不变"""
    parts = [_as_uuid(value).hex[:8] for value in (contest_id, challenge_id, team_id)]
    return f"ctf_{'_'.join(parts)}"[:PROJECT_NAME_MAX_LENGTH]


def network_name(project_name: str) -> str:
    return f"{project_name}_net"


class SubnetAllocator:
    """
    子网分配器

        allocator = SubnetAllocator()
        instance = allocator.claim(seed, lambda subnet: repo.create({... "subnet": subnet}))
    """

    def __init__(self, repo: Optional[InstanceRepo] = None):
        self.repo = repo or InstanceRepo()

    def claim(
            self,
            seed: int,
            attempt: Callable[[str], T],
            *,
            preferred: Optional[str] = None,
            on_conflict: Optional[Callable[[], Optional[T]]] = None,
    ) -> T:
        """
        依次用候选子网调用 attempt，返回第一次成功写入的结果

        - preferred：优先尝试的子网（原地复用时沿用旧网段），不受占用集合过滤
        - on_conflict：冲突后调用，返回非 None 表示冲突并非来自子网（例如同一三元组被并发创建），直接返回
        """
        used = self.repo.live_subnets()
        tried: set[str] = set()
        candidates: Iterator[str] = iter_candidates(seed)
        if preferred:
            candidates = _prepend(preferred, candidates)
        for candidate in candidates:
            if candidate in tried:
                continue
            tried.add(candidate)
            if candidate != preferred and candidate in used:
                continue
            try:
                with transaction.atomic():
                    return attempt(candidate)
            except IntegrityError:
                if on_conflict is not None:
                    resolved = on_conflict()
                    if resolved is not None:
                        return resolved
                logger.info(
                    "子网已被并发占用，尝试下一个候选",
                    extra=logger_extra({"subnet": candidate}),
                )
        logger.error("子网候选空间已耗尽", extra=logger_extra({"space": SUBNET_SPACE}))
        raise SubnetExhaustedError()


def _prepend(first: str, rest: Iterator[str]) -> Iterator[str]:
    yield first
    yield from rest
