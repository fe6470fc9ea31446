"""
题目后台配置：维护运行时相关字段（类型、Flag 模式、可见性、编排模板与元数据）
"""

from __future__ import annotations

from django.contrib import admin

from .models import Challenge


@admin.register(Challenge)
class ChallengeAdmin(admin.ModelAdmin):
    list_display = ("title", "contest", "challenge_type", "flag_mode", "is_visible", "release_at")
    list_filter = ("contest", "challenge_type", "flag_mode", "is_visible")
    search_fields = ("title", "slug")
    prepopulated_fields = {"slug": ("title",)}
    fieldsets = (
        ("基础信息", {"fields": ("contest", "title", "slug", "challenge_type", "flag_mode")}),
        ("发布", {"fields": ("is_visible", "release_at")}),
        ("运行时", {"fields": ("compose_template", "metadata")}),
    )
    actions = ["teardown_runtime_instances"]

    @admin.action(description="销毁所选题目的全部运行实例")
    def teardown_runtime_instances(self, request, queryset):
        from apps.instances.tasks import destroy_challenge_instances

        for challenge in queryset:
            destroy_challenge_instances.delay(str(challenge.id))
        self.message_user(request, f"已提交 {queryset.count()} 道题目的运行实例销毁任务")
