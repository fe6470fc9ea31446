from __future__ import annotations

import uuid

from django.conf import settings
from django.db import models

# 模型文件：比赛、队伍与队员，作为运行实例编排的只读上下文

User = settings.AUTH_USER_MODEL


class Contest(models.Model):
    """
    比赛模型：
    - 状态由赛事管理员推进（草稿 → 已排期 → 进行中 → 已结束）
    - 可见性控制普通选手是否可以访问比赛内的运行实例
    """

    class Status(models.TextChoices):
        DRAFT = "draft", "草稿"
        SCHEDULED = "scheduled", "已排期"
        RUNNING = "running", "进行中"
        ENDED = "ended", "已结束"

    class Visibility(models.TextChoices):
        """比赛可见性枚举：控制公开/私有访问范围"""
        PUBLIC = "public", "公开"
        PRIVATE = "private", "私有"

    # UUID 主键：参与子网种子与项目名计算
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField("比赛名称", max_length=200)
    slug = models.SlugField("标识", max_length=200, unique=True)
    status = models.CharField("状态", max_length=20, choices=Status.choices, default=Status.DRAFT)
    visibility = models.CharField("可见性", max_length=20, choices=Visibility.choices, default=Visibility.PUBLIC)
    start_time = models.DateTimeField("开始时间", null=True, blank=True)
    end_time = models.DateTimeField("结束时间", null=True, blank=True)
    created_at = models.DateTimeField("创建时间", auto_now_add=True)
    updated_at = models.DateTimeField("更新时间", auto_now=True)

    class Meta:
        ordering = ["-created_at", "name"]
        verbose_name = "比赛"
        verbose_name_plural = "比赛"

    def __str__(self) -> str:
        return self.name

    @property
    def is_running(self) -> bool:
        return self.status == self.Status.RUNNING

    @property
    def is_private(self) -> bool:
        return self.visibility == self.Visibility.PRIVATE


class Team(models.Model):
    """
    队伍模型：
    - 关联比赛，运行实例按（比赛, 题目, 队伍）三元组唯一
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    contest = models.ForeignKey(Contest, verbose_name="所属比赛", related_name="teams", on_delete=models.CASCADE)
    name = models.CharField("队伍名称", max_length=120)
    captain = models.ForeignKey(User, verbose_name="队长", related_name="owned_teams", on_delete=models.CASCADE)
    # 队伍是否有效（解散后置为 False）
    is_active = models.BooleanField("有效", default=True)
    created_at = models.DateTimeField("创建时间", auto_now_add=True)
    updated_at = models.DateTimeField("更新时间", auto_now=True)

    class Meta:
        unique_together = (("contest", "name"),)
        ordering = ["name"]
        verbose_name = "队伍"
        verbose_name_plural = "队伍"

    def __str__(self) -> str:
        return self.name


class TeamMember(models.Model):
    """
    队伍成员模型：
    - role 标识角色（队长/队员），is_active 控制是否在队伍中
    """

    class Role(models.TextChoices):
        CAPTAIN = "captain", "队长"
        MEMBER = "member", "队员"

    team = models.ForeignKey(Team, verbose_name="队伍", related_name="members", on_delete=models.CASCADE)
    user = models.ForeignKey(User, verbose_name="用户", related_name="team_memberships", on_delete=models.CASCADE)
    role = models.CharField("角色", max_length=20, choices=Role.choices, default=Role.MEMBER)
    joined_at = models.DateTimeField("加入时间", auto_now_add=True)
    is_active = models.BooleanField("有效", default=True)

    class Meta:
        unique_together = ("team", "user")
        indexes = [
            models.Index(fields=["team", "user", "is_active"], name="contests_te_team_id_active_idx"),
        ]
        verbose_name = "参赛队伍成员"
        verbose_name_plural = "参赛队伍成员"

    def __str__(self) -> str:
        return f"{self.user} -> {self.team}"
