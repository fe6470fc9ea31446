"""
通用权限封装（apps.common.permissions）

- 登录校验、特权角色判断
- 出错时统一抛出 BizError 子类，由全局异常处理器统一包装响应
"""

from __future__ import annotations

from typing import Any

from rest_framework.permissions import BasePermission
from rest_framework.request import Request

from .exceptions import AuthError

#: 视为特权的角色：可越过可见性 / 比赛状态等策略限制
PRIVILEGED_ROLES = frozenset({"admin", "judge"})


def _ensure_authenticated(request: Request) -> Any:
    """确保用户已登录，返回 User；否则抛 AuthError"""
    user = getattr(request, "user", None)
    if user is None or not user.is_authenticated:
        raise AuthError(message="authentication required")
    return user


def is_privileged(user: Any) -> bool:
    """管理员 / 裁判视为特权用户；超级用户兜底"""
    if user is None or not getattr(user, "is_authenticated", False):
        return False
    if getattr(user, "is_superuser", False):
        return True
    return getattr(user, "role", None) in PRIVILEGED_ROLES


class AllowAny(BasePermission):
    """公开接口（如运行环境自身的心跳上报，凭令牌鉴权）"""

    def has_permission(self, request: Request, view: Any) -> bool:  # noqa: D401
        return True


class IsAuthenticated(BasePermission):
    """需要已登录用户，出错时抛 BizError"""

    def has_permission(self, request: Request, view: Any) -> bool:
        _ensure_authenticated(request)
        return True

