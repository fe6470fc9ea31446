from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar

from apps.common.base.base_schema import BaseSchema
from apps.common.exceptions import ValidationError


# Schema：运行实例操作入参校验


@dataclass
class InstanceActionSchema(BaseSchema[None]):
    """
    实例操作入参（启动 / 停止 / 重置 / 销毁 / 心跳 / 查询）：
    - 比赛与题目 ID 必填，队伍由当前登录用户解析
    """
    auto_validate: ClassVar[bool] = True
    contest_id: Any
    challenge_id: Any

    def validate(self) -> None:
        """统一转为 UUID"""
        self.contest_id = self.parse_uuid(self.contest_id, "contest_id")
        self.challenge_id = self.parse_uuid(self.challenge_id, "challenge_id")


@dataclass
class HeartbeatReportSchema(BaseSchema[None]):
    """运行环境自报心跳：仅携带签发给实例的令牌"""
    auto_validate: ClassVar[bool] = True
    token: Any = ""

    def validate(self) -> None:
        if not isinstance(self.token, str) or not self.token.strip():
            raise ValidationError(message="token is required")
        self.token = self.token.strip()
