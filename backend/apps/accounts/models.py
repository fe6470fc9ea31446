"""
账户模型：扩展 Django 用户，增加平台角色

- 角色决定运行实例策略检查的力度：管理员/裁判可越过可见性、发布时间与比赛状态限制
"""

from __future__ import annotations

from django.contrib.auth.models import AbstractUser
from django.db import models


class User(AbstractUser):
    """
    平台用户：
    - 选手（player）通过队伍身份操作运行实例
    - 管理员（admin）/ 裁判（judge）为特权角色，可预览未发布题目的运行环境
    """

    class Role(models.TextChoices):
        PLAYER = "player", "选手"
        JUDGE = "judge", "裁判"
        ADMIN = "admin", "管理员"

    role = models.CharField(
        "角色",
        max_length=20,
        choices=Role.choices,
        default=Role.PLAYER,
        help_text="平台角色：选手 / 裁判 / 管理员",
    )

    class Meta:
        verbose_name = "用户"
        verbose_name_plural = "用户"

    def __str__(self) -> str:
        return self.username
