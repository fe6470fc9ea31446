from __future__ import annotations

from drf_spectacular.utils import OpenApiParameter, extend_schema, inline_serializer
from rest_framework import serializers
from rest_framework.request import Request
from rest_framework.response import Response
from rest_framework.views import APIView

from apps.common import response
from apps.common.permissions import AllowAny, IsAuthenticated
from apps.common.schema_utils import (
    api_response_schema,
    instance_action_request,
    instance_serializer,
    wireguard_config_serializer,
)

from .schemas import HeartbeatReportSchema, InstanceActionSchema
from .services import (
    MSG_STARTED,
    MSG_WIREGUARD_CONFIG,
    DestroyInstanceService,
    HeartbeatInstanceService,
    QueryInstanceService,
    ReportHeartbeatService,
    ResetInstanceService,
    StartInstanceService,
    StopInstanceService,
    WireguardConfigService,
    serialize_instance,
)


# 视图层：运行实例的启动 / 停止 / 重置 / 销毁 / 心跳 / 查询


def _instance_response(result, *, created: bool = False) -> Response:
    payload = {"instance": serialize_instance(result.instance, result.message)}
    if created:
        return response.created(payload, message=result.message)
    return response.success(payload, message=result.message)


class InstanceActionView(APIView):
    """
    POST 类实例操作的公共实现：
    - 请求体携带 contest_id / challenge_id，队伍由当前登录用户解析
    - 子类只需指定 service_class；每次请求新建服务，运行时配置随请求读取
    """

    permission_classes = [IsAuthenticated]
    service_class = None

    def post(self, request: Request) -> Response:
        schema = InstanceActionSchema.from_dict(request.data, auto_validate=True)
        result = self.service_class().execute(request.user, schema)
        return _instance_response(result)


class InstanceStartView(InstanceActionView):
    service_class = StartInstanceService

    @extend_schema(
        summary="启动运行实例",
        request=instance_action_request(),
        responses=api_response_schema("InstanceStart", {"instance": instance_serializer()}),
    )
    def post(self, request: Request) -> Response:
        schema = InstanceActionSchema.from_dict(request.data, auto_validate=True)
        result = self.service_class().execute(request.user, schema)
        # 已在运行时原样返回，不算新建
        return _instance_response(result, created=result.message == MSG_STARTED)


class InstanceStopView(InstanceActionView):
    service_class = StopInstanceService

    @extend_schema(
        summary="停止运行实例",
        request=instance_action_request(),
        responses=api_response_schema("InstanceStop", {"instance": instance_serializer()}),
    )
    def post(self, request: Request) -> Response:
        return super().post(request)


class InstanceResetView(InstanceActionView):
    service_class = ResetInstanceService

    @extend_schema(
        summary="重置运行实例",
        description="沿用原子网与动态 Flag，强制重建全部容器",
        request=instance_action_request(),
        responses=api_response_schema("InstanceReset", {"instance": instance_serializer()}),
    )
    def post(self, request: Request) -> Response:
        return super().post(request)


class InstanceDestroyView(InstanceActionView):
    service_class = DestroyInstanceService

    @extend_schema(
        summary="销毁运行实例",
        request=instance_action_request(),
        responses=api_response_schema("InstanceDestroy", {"instance": instance_serializer()}),
    )
    def post(self, request: Request) -> Response:
        return super().post(request)


class InstanceHeartbeatView(InstanceActionView):
    service_class = HeartbeatInstanceService

    @extend_schema(
        summary="选手侧心跳",
        request=instance_action_request(),
        responses=api_response_schema("InstanceHeartbeat", {"instance": instance_serializer()}),
    )
    def post(self, request: Request) -> Response:
        return super().post(request)


class InstanceQueryView(APIView):
    """查询当前队伍在某题目下的实例"""

    permission_classes = [IsAuthenticated]
    service_class = QueryInstanceService

    @extend_schema(
        summary="查询运行实例",
        request=None,
        parameters=[
            OpenApiParameter("contest_id", str, OpenApiParameter.PATH, description="比赛 ID"),
            OpenApiParameter("challenge_id", str, OpenApiParameter.PATH, description="题目 ID"),
        ],
        responses=api_response_schema("InstanceQuery", {"instance": instance_serializer()}),
    )
    def get(self, request: Request, contest_id, challenge_id) -> Response:
        schema = InstanceActionSchema.from_dict(
            {"contest_id": contest_id, "challenge_id": challenge_id},
            auto_validate=True,
        )
        return _instance_response(self.service_class().execute(request.user, schema))


class HeartbeatReportView(APIView):
    """
    运行环境自报心跳：
    - 不走用户登录，凭启动时注入的实例令牌鉴权
    """

    permission_classes = [AllowAny]
    authentication_classes: list = []
    service_class = ReportHeartbeatService

    @extend_schema(
        summary="运行环境心跳上报",
        auth=[],
        request=inline_serializer(
            name="HeartbeatReportRequest",
            fields={"token": serializers.CharField(help_text="实例心跳令牌")},
        ),
        responses=api_response_schema("HeartbeatReport", {"instance": instance_serializer()}),
    )
    def post(self, request: Request) -> Response:
        schema = HeartbeatReportSchema.from_dict(request.data, auto_validate=True)
        return _instance_response(self.service_class().execute(schema))


class WireguardConfigView(APIView):
    """下载当前队伍实例的 WireGuard 客户端配置"""

    permission_classes = [IsAuthenticated]
    service_class = WireguardConfigService

    @extend_schema(
        summary="下载 WireGuard 配置",
        request=None,
        parameters=[
            OpenApiParameter("contest_id", str, OpenApiParameter.PATH, description="比赛 ID"),
            OpenApiParameter("challenge_id", str, OpenApiParameter.PATH, description="题目 ID"),
        ],
        responses=api_response_schema("WireguardConfig", {"config": wireguard_config_serializer()}),
    )
    def get(self, request: Request, contest_id, challenge_id) -> Response:
        schema = InstanceActionSchema.from_dict(
            {"contest_id": contest_id, "challenge_id": challenge_id},
            auto_validate=True,
        )
        config = self.service_class().execute(request.user, schema)
        return response.success({"config": config}, message=MSG_WIREGUARD_CONFIG)
