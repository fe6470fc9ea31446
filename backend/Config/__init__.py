# 确保 Django 启动时加载 Celery 应用，shared_task 绑定到该应用
from .celery import app as celery_app

__all__ = ("celery_app",)
