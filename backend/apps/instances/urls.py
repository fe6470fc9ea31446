from __future__ import annotations

from django.urls import path

from .views import (
    HeartbeatReportView,
    InstanceDestroyView,
    InstanceHeartbeatView,
    InstanceQueryView,
    InstanceResetView,
    InstanceStartView,
    InstanceStopView,
    WireguardConfigView,
)

app_name = "instances"

# 路由：实例生命周期操作与心跳
urlpatterns = [
    path("start/", InstanceStartView.as_view(), name="start"),
    path("stop/", InstanceStopView.as_view(), name="stop"),
    path("reset/", InstanceResetView.as_view(), name="reset"),
    path("destroy/", InstanceDestroyView.as_view(), name="destroy"),
    path("heartbeat/", InstanceHeartbeatView.as_view(), name="heartbeat"),
    path("heartbeat/report/", HeartbeatReportView.as_view(), name="heartbeat-report"),
    path("<uuid:contest_id>/<uuid:challenge_id>/", InstanceQueryView.as_view(), name="query"),
    path(
        "<uuid:contest_id>/<uuid:challenge_id>/wireguard-config/",
        WireguardConfigView.as_view(),
        name="wireguard-config",
    ),
]
