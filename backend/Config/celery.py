from __future__ import annotations

import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "Config.settings")

from django.conf import settings  # noqa: E402

# 创建 Celery 应用，使用 Django 配置中的 CELERY_* 变量
app = Celery("Config")
app.config_from_object("django.conf:settings", namespace="CELERY")
app.autodiscover_tasks()

if getattr(settings, "TIME_ZONE", None):
    app.conf.timezone = settings.TIME_ZONE

# Celery Beat：settings 中声明的调度优先，未声明时按开关注入两个回收器
reaper_interval = max(int(getattr(settings, "INSTANCE_REAPER_INTERVAL_SECONDS", 60)), 1)
app.conf.beat_schedule = dict(getattr(settings, "CELERY_BEAT_SCHEDULE", {}) or {})
if getattr(settings, "INSTANCE_REAPER_ENABLED", True) and "reap-expired-instances" not in app.conf.beat_schedule:
    app.conf.beat_schedule["reap-expired-instances"] = {
        "task": "reap_expired_instances",
        "schedule": reaper_interval,
    }
if getattr(settings, "INSTANCE_STALE_REAPER_ENABLED", True) and "reap-stale-instances" not in app.conf.beat_schedule:
    app.conf.beat_schedule["reap-stale-instances"] = {
        "task": "reap_stale_instances",
        "schedule": reaper_interval,
    }
