from __future__ import annotations

from django.contrib import admin, messages

from .models import Instance
from .reapers import InstanceReaper


# Admin 配置：查看运行实例状态，支持批量强制销毁


@admin.register(Instance)
class InstanceAdmin(admin.ModelAdmin):
    """运行实例后台：展示子网、项目名与状态"""

    list_display = ("compose_project_name", "contest", "challenge", "team", "status", "subnet", "expires_at",
                    "last_heartbeat_at")
    list_filter = ("status", "contest", "challenge")
    search_fields = ("compose_project_name", "subnet", "team__name", "challenge__title")
    readonly_fields = [field.name for field in Instance._meta.fields]
    actions = ["destroy_selected_instances"]

    def has_add_permission(self, request):
        # 实例只能由启动接口创建
        return False

    @admin.action(description="强制销毁所选运行实例")
    def destroy_selected_instances(self, request, queryset):
        summary = InstanceReaper().destroy_instances(list(queryset), reason="admin_destroy")
        level = messages.WARNING if summary.failed else messages.SUCCESS
        self.message_user(
            request,
            f"scanned={summary.scanned} reaped={summary.reaped} failed={summary.failed} skipped={summary.skipped}",
            level=level,
        )
