from __future__ import annotations

import uuid

from django.db import models
from django.utils import timezone

# 模型文件：定义题目的运行时相关字段（类型、Flag 模式、可见性、编排模板），不承载业务流程


class Challenge(models.Model):
    """
    题目主体：
    - 关联比赛，记录类型、Flag 模式与可见性/发布时间
    - compose_template 为运行实例的编排模板，metadata 承载运行时选项与自定义变量
    """

    class ChallengeType(models.TextChoices):
        """题目类型：只有动态靶机/内网题需要运行实例"""
        STATIC = "static", "静态附件"
        DYNAMIC = "dynamic", "动态靶机"
        INTERNAL = "internal", "内网环境"

    class FlagMode(models.TextChoices):
        STATIC = "static", "静态 Flag"
        DYNAMIC = "dynamic", "动态 Flag"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    # 所属比赛
    contest = models.ForeignKey(
        "contests.Contest",
        verbose_name="所属比赛",
        related_name="challenges",
        on_delete=models.CASCADE,
        help_text="题目所属的比赛，用于限制可见范围",
    )
    # 题目标题
    title = models.CharField("题目标题", max_length=200, help_text="展示给选手的题目名称")
    slug = models.SlugField("题目标识", max_length=200, help_text="比赛内唯一标识")
    # 题目类型
    challenge_type = models.CharField(
        "题目类型",
        max_length=20,
        choices=ChallengeType.choices,
        default=ChallengeType.STATIC,
        help_text="dynamic/internal 类型需要为每支队伍启动运行实例",
    )
    # Flag 模式
    flag_mode = models.CharField(
        "Flag 模式",
        max_length=20,
        choices=FlagMode.choices,
        default=FlagMode.STATIC,
        help_text="dynamic 模式下按队伍生成 Flag 并注入运行实例",
    )
    is_visible = models.BooleanField("是否可见", default=False, help_text="隐藏题目对普通选手不可见")
    release_at = models.DateTimeField("发布时间", null=True, blank=True, help_text="为空表示立即发布")
    # 编排模板（docker compose YAML，支持 {{占位符}}）
    compose_template = models.TextField("编排模板", blank=True, default="", help_text="运行实例的 compose 模板")
    # 运行时元数据：runtime / compose_variables 等
    metadata = models.JSONField("元数据", default=dict, blank=True, help_text="运行时模式与自定义变量声明")
    created_at = models.DateTimeField("创建时间", auto_now_add=True)
    updated_at = models.DateTimeField("更新时间", auto_now=True)

    class Meta:
        ordering = ["contest_id", "title"]
        verbose_name = "题目"
        verbose_name_plural = "题目"
        unique_together = (("contest", "slug"),)

    def __str__(self) -> str:
        return self.title

    @property
    def is_released(self) -> bool:
        return self.release_at is None or self.release_at <= timezone.now()

    @property
    def requires_runtime(self) -> bool:
        return self.challenge_type in (self.ChallengeType.DYNAMIC, self.ChallengeType.INTERNAL)
