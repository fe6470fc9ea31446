from __future__ import annotations

import uuid

import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("contests", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="Challenge",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("title", models.CharField(help_text="展示给选手的题目名称", max_length=200, verbose_name="题目标题")),
                ("slug", models.SlugField(help_text="比赛内唯一标识", max_length=200, verbose_name="题目标识")),
                ("challenge_type", models.CharField(choices=[("static", "静态附件"), ("dynamic", "动态靶机"), ("internal", "内网环境")], default="static", help_text="dynamic/internal 类型需要为每支队伍启动运行实例", max_length=20, verbose_name="题目类型")),
                ("flag_mode", models.CharField(choices=[("static", "静态 Flag"), ("dynamic", "动态 Flag")], default="static", help_text="dynamic 模式下按队伍生成 Flag 并注入运行实例", max_length=20, verbose_name="Flag 模式")),
                ("is_visible", models.BooleanField(default=False, help_text="隐藏题目对普通选手不可见", verbose_name="是否可见")),
                ("release_at", models.DateTimeField(blank=True, help_text="为空表示立即发布", null=True, verbose_name="发布时间")),
                ("compose_template", models.TextField(blank=True, default="", help_text="运行实例的 compose 模板", verbose_name="编排模板")),
                ("metadata", models.JSONField(blank=True, default=dict, help_text="运行时模式与自定义变量声明", verbose_name="元数据")),
                ("created_at", models.DateTimeField(auto_now_add=True, verbose_name="创建时间")),
                ("updated_at", models.DateTimeField(auto_now=True, verbose_name="更新时间")),
                ("contest", models.ForeignKey(help_text="题目所属的比赛，用于限制可见范围", on_delete=django.db.models.deletion.CASCADE, related_name="challenges", to="contests.contest", verbose_name="所属比赛")),
            ],
            options={
                "verbose_name": "题目",
                "verbose_name_plural": "题目",
                "ordering": ["contest_id", "title"],
                "unique_together": {("contest", "slug")},
            },
        ),
    ]
