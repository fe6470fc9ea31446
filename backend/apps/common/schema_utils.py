# apps/common/schema_utils.py
from __future__ import annotations

from rest_framework import serializers
from drf_spectacular.utils import inline_serializer


_CACHE: dict[str, serializers.Serializer] = {}


def _cached(name: str, builder):
    """简单缓存，避免重复生成同名 inline serializer 导致冲突"""
    if name not in _CACHE:
        _CACHE[name] = builder()
    return _CACHE[name]


def api_response_schema(
    name: str,
    data_fields: dict,
    *,
    extra_serializer: serializers.Field | None = None,
) -> serializers.Serializer:
    """
    构造统一响应 Schema：code/message/data/extra
    - name 用于生成唯一的响应/数据命名
    - data_fields 为 data 内部的字段定义
    """
    normalized_fields = {}
    for key, value in data_fields.items():
        if isinstance(value, type) and issubclass(value, serializers.Serializer):
            normalized_fields[key] = value()
        else:
            normalized_fields[key] = value
    data_serializer = inline_serializer(name=f"{name}Data", fields=normalized_fields)
    return inline_serializer(
        name=f"{name}Response",
        fields={
            "code": serializers.IntegerField(help_text="业务状态码，0 表示成功"),
            "message": serializers.CharField(help_text="提示信息"),
            "data": data_serializer,
            "extra": extra_serializer
            if extra_serializer
            else serializers.DictField(required=False, allow_null=True, help_text="附加信息"),
        },
    )


def instance_action_request():
    return _cached(
        "InstanceActionRequest",
        lambda: inline_serializer(
            name="InstanceActionRequest",
            fields={
                "contest_id": serializers.UUIDField(help_text="比赛 ID"),
                "challenge_id": serializers.UUIDField(help_text="题目 ID"),
            },
        ),
    )


def instance_serializer():
    return _cached(
        "Instance",
        lambda: inline_serializer(
            name="Instance",
            fields={
                "id": serializers.UUIDField(),
                "contest_id": serializers.UUIDField(),
                "challenge_id": serializers.UUIDField(),
                "team_id": serializers.UUIDField(),
                "status": serializers.ChoiceField(
                    choices=["creating", "running", "stopped", "destroyed", "expired", "failed"],
                    help_text="实例状态",
                ),
                "subnet": serializers.CharField(help_text="实例专属 /24 子网"),
                "compose_project_name": serializers.CharField(),
                "entrypoint_url": serializers.CharField(help_text="访问入口"),
                "cpu_limit": serializers.CharField(allow_null=True, help_text="CPU 限制，如 1.00"),
                "memory_limit_mb": serializers.IntegerField(allow_null=True),
                "started_at": serializers.DateTimeField(allow_null=True),
                "expires_at": serializers.DateTimeField(allow_null=True),
                "destroyed_at": serializers.DateTimeField(allow_null=True),
                "last_heartbeat_at": serializers.DateTimeField(allow_null=True),
                "created_at": serializers.DateTimeField(),
                "updated_at": serializers.DateTimeField(),
                "network_access": serializers.DictField(
                    allow_null=True,
                    help_text="ssh_bastion / wireguard 接入信息；direct 模式为 null",
                ),
                "message": serializers.CharField(help_text="操作说明"),
            },
        ),
    )


def wireguard_config_serializer():
    return _cached(
        "WireguardConfig",
        lambda: inline_serializer(
            name="WireguardConfig",
            fields={
                "contest_id": serializers.UUIDField(),
                "challenge_id": serializers.UUIDField(),
                "team_id": serializers.UUIDField(),
                "endpoint": serializers.CharField(help_text="wg://host:port"),
                "filename": serializers.CharField(help_text="建议保存的文件名"),
                "content": serializers.CharField(help_text="WireGuard 客户端配置"),
            },
        ),
    )
