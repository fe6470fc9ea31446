from __future__ import annotations

import uuid

from django.db import models
from django.db.models import Q

from apps.common.exceptions import InvalidTransitionError

# 模型定义：运行实例的持久化记录与显式状态机


class Instance(models.Model):
    """
    运行实例：
    - 每个（比赛, 题目, 队伍）三元组至多一行，销毁后的行可在下次启动时原地复用
    - 子网在未销毁的实例之间唯一（部分唯一约束，分配与占用在同一次写入中完成）
    - compose_project_name 由三元组确定，重置不会改变
    """

    class Status(models.TextChoices):
        """实例状态枚举，状态迁移只能走 TRANSITIONS 中登记的边"""
        CREATING = "creating", "创建中"
        RUNNING = "running", "运行中"
        STOPPED = "stopped", "已停止"
        DESTROYED = "destroyed", "已销毁"
        EXPIRED = "expired", "已过期"
        FAILED = "failed", "异常"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    contest = models.ForeignKey("contests.Contest", verbose_name="所属比赛", related_name="instances",
                                on_delete=models.CASCADE)
    challenge = models.ForeignKey("challenges.Challenge", verbose_name="题目", related_name="instances",
                                  on_delete=models.CASCADE)
    team = models.ForeignKey("contests.Team", verbose_name="队伍", related_name="instances", on_delete=models.CASCADE)
    status = models.CharField("状态", max_length=20, choices=Status.choices, default=Status.CREATING)
    # /24 私有网段，例如 10.16.0.0/24
    subnet = models.CharField("子网", max_length=32)
    compose_project_name = models.CharField("编排项目名", max_length=96)
    entrypoint_url = models.CharField("访问入口", max_length=255, blank=True, default="")
    # 为空表示不限制
    cpu_limit = models.DecimalField("CPU 限制", max_digits=6, decimal_places=2, null=True, blank=True)
    memory_limit_mb = models.PositiveIntegerField("内存限制(MB)", null=True, blank=True)
    started_at = models.DateTimeField("启动时间", null=True, blank=True)
    expires_at = models.DateTimeField("过期时间", null=True, blank=True)
    destroyed_at = models.DateTimeField("销毁时间", null=True, blank=True)
    last_heartbeat_at = models.DateTimeField("最近心跳", null=True, blank=True)
    created_at = models.DateTimeField("创建时间", auto_now_add=True)
    updated_at = models.DateTimeField("更新时间", auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(fields=["contest", "challenge", "team"], name="uniq_instance_triple"),
            models.UniqueConstraint(
                fields=["subnet"],
                condition=~Q(status="destroyed"),
                name="uniq_live_instance_subnet",
            ),
        ]
        indexes = [
            models.Index(fields=["status", "expires_at"], name="instance_status_expires_idx"),
            models.Index(fields=["status", "last_heartbeat_at"], name="instance_status_hb_idx"),
        ]
        verbose_name = "运行实例"
        verbose_name_plural = "运行实例"

    def __str__(self) -> str:
        return f"{self.compose_project_name} ({self.status})"


# 状态迁移表：key 为当前状态，value 为允许到达的目标状态
# expired 仅为兼容保留，没有任何入边；回收器直接把实例置为 destroyed
# creating → creating 只用于接管超时未完成的创建（由服务层按 updated_at 判定）
_LIVE_TARGETS = frozenset({
    Instance.Status.CREATING,
    Instance.Status.STOPPED,
    Instance.Status.FAILED,
    Instance.Status.DESTROYED,
})

TRANSITIONS: dict[str, frozenset[str]] = {
    Instance.Status.CREATING: _LIVE_TARGETS | {Instance.Status.RUNNING},
    Instance.Status.RUNNING: _LIVE_TARGETS,
    Instance.Status.STOPPED: _LIVE_TARGETS,
    Instance.Status.FAILED: _LIVE_TARGETS,
    Instance.Status.DESTROYED: frozenset({Instance.Status.CREATING}),
    Instance.Status.EXPIRED: _LIVE_TARGETS,
}


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def ensure_transition(current: str, target: str) -> None:
    """迁移不在表内时抛出 InvalidTransitionError"""
    if not can_transition(current, target):
        raise InvalidTransitionError(
            message=f"instance cannot move from {current} to {target}",
            extra={"from": str(current), "to": str(target)},
        )


def sources_for(target: str) -> list[str]:
    """可迁移到 target 的全部来源状态，供条件更新的 WHERE status IN (...) 使用"""
    return [str(source) for source, targets in TRANSITIONS.items() if target in targets]
