from __future__ import annotations

import uuid

import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Contest",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("name", models.CharField(max_length=200, verbose_name="比赛名称")),
                ("slug", models.SlugField(max_length=200, unique=True, verbose_name="标识")),
                ("status", models.CharField(choices=[("draft", "草稿"), ("scheduled", "已排期"), ("running", "进行中"), ("ended", "已结束")], default="draft", max_length=20, verbose_name="状态")),
                ("visibility", models.CharField(choices=[("public", "公开"), ("private", "私有")], default="public", max_length=20, verbose_name="可见性")),
                ("start_time", models.DateTimeField(blank=True, null=True, verbose_name="开始时间")),
                ("end_time", models.DateTimeField(blank=True, null=True, verbose_name="结束时间")),
                ("created_at", models.DateTimeField(auto_now_add=True, verbose_name="创建时间")),
                ("updated_at", models.DateTimeField(auto_now=True, verbose_name="更新时间")),
            ],
            options={
                "verbose_name": "比赛",
                "verbose_name_plural": "比赛",
                "ordering": ["-created_at", "name"],
            },
        ),
        migrations.CreateModel(
            name="Team",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("name", models.CharField(max_length=120, verbose_name="队伍名称")),
                ("is_active", models.BooleanField(default=True, verbose_name="有效")),
                ("created_at", models.DateTimeField(auto_now_add=True, verbose_name="创建时间")),
                ("updated_at", models.DateTimeField(auto_now=True, verbose_name="更新时间")),
                ("captain", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="owned_teams", to=settings.AUTH_USER_MODEL, verbose_name="队长")),
                ("contest", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="teams", to="contests.contest", verbose_name="所属比赛")),
            ],
            options={
                "verbose_name": "队伍",
                "verbose_name_plural": "队伍",
                "ordering": ["name"],
                "unique_together": {("contest", "name")},
            },
        ),
        migrations.CreateModel(
            name="TeamMember",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("role", models.CharField(choices=[("captain", "队长"), ("member", "队员")], default="member", max_length=20, verbose_name="角色")),
                ("joined_at", models.DateTimeField(auto_now_add=True, verbose_name="加入时间")),
                ("is_active", models.BooleanField(default=True, verbose_name="有效")),
                ("team", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="members", to="contests.team", verbose_name="队伍")),
                ("user", models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name="team_memberships", to=settings.AUTH_USER_MODEL, verbose_name="用户")),
            ],
            options={
                "verbose_name": "参赛队伍成员",
                "verbose_name_plural": "参赛队伍成员",
                "indexes": [models.Index(fields=["team", "user", "is_active"], name="contests_te_team_id_active_idx")],
                "unique_together": {("team", "user")},
            },
        ),
    ]
