from __future__ import annotations

import uuid

import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("contests", "0001_initial"),
        ("challenges", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="Instance",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("status", models.CharField(choices=[("creating", "创建中"), ("running", "运行中"), ("stopped", "已停止"), ("destroyed", "已销毁"), ("expired", "已过期"), ("failed", "异常")], default="creating", max_length=20, verbose_name="状态")),
                ("subnet", models.CharField(max_length=32, verbose_name="子网")),
                ("compose_project_name", models.CharField(max_length=96, verbose_name="编排项目名")),
                ("entrypoint_url", models.CharField(blank=True, default="", max_length=255, verbose_name="访问入口")),
                ("cpu_limit", models.DecimalField(blank=True, decimal_places=2, max_digits=6, null=True, verbose_name="CPU 限制")),
                ("memory_limit_mb", models.PositiveIntegerField(blank=True, null=True, verbose_name="内存限制(MB)")),
                ("started_at", models.DateTimeField(blank=True, null=True, verbose_name="启动时间")),
                ("expires_at", models.DateTimeField(blank=True, null=True, verbose_name="过期时间")),
                ("destroyed_at", models.DateTimeField(blank=True, null=True, verbose_name="销毁时间")),
                ("last_heartbeat_at", models.DateTimeField(blank=True, null=True, verbose_name="最近心跳")),
                ("created_at", models.DateTimeField(auto_now_add=True, verbose_name="创建时间")),
                ("updated_at", models.DateTimeField(auto_now=True, verbose_name="更新时间")),
                ("challenge", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="instances", to="challenges.challenge", verbose_name="题目")),
                ("contest", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="instances", to="contests.contest", verbose_name="所属比赛")),
                ("team", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="instances", to="contests.team", verbose_name="队伍")),
            ],
            options={
                "verbose_name": "运行实例",
                "verbose_name_plural": "运行实例",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status", "expires_at"], name="instance_status_expires_idx"),
                    models.Index(fields=["status", "last_heartbeat_at"], name="instance_status_hb_idx"),
                ],
            },
        ),
        migrations.AddConstraint(
            model_name="instance",
            constraint=models.UniqueConstraint(fields=("contest", "challenge", "team"), name="uniq_instance_triple"),
        ),
        migrations.AddConstraint(
            model_name="instance",
            constraint=models.UniqueConstraint(
                condition=models.Q(("status", "destroyed"), _negated=True),
                fields=("subnet",),
                name="uniq_live_instance_subnet",
            ),
        ),
    ]
