from __future__ import annotations

from django.contrib import admin

from .models import Contest, Team, TeamMember


class TeamMemberInline(admin.TabularInline):
    model = TeamMember
    extra = 0


@admin.register(Contest)
class ContestAdmin(admin.ModelAdmin):
    """比赛后台：维护状态与可见性，二者直接决定运行实例能否启动"""

    list_display = ("name", "slug", "status", "visibility", "start_time", "end_time")
    list_filter = ("status", "visibility")
    search_fields = ("name", "slug")
    prepopulated_fields = {"slug": ("name",)}
    actions = ["teardown_runtime_instances"]

    @admin.action(description="销毁所选比赛的全部运行实例")
    def teardown_runtime_instances(self, request, queryset):
        # 异步执行，逐个比赛投递回收任务
        from apps.instances.tasks import destroy_contest_instances

        for contest in queryset:
            destroy_contest_instances.delay(str(contest.id))
        self.message_user(request, f"已提交 {queryset.count()} 个比赛的运行实例销毁任务")


@admin.register(Team)
class TeamAdmin(admin.ModelAdmin):
    list_display = ("name", "contest", "captain", "is_active", "created_at")
    list_filter = ("contest", "is_active")
    search_fields = ("name",)
    inlines = [TeamMemberInline]
