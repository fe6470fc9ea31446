from __future__ import annotations

from typing import Any

from rest_framework.test import APIClient

from apps.common.infra.jwt_provider import issue_tokens


class AuthenticatedAPIMixin:
    """
    提供统一的认证客户端构造工具，减少各测试用例的重复代码

    直接为用户签发访问令牌，不依赖登录接口
    """

    def auth_client(self, user: Any) -> APIClient:
        """构造附带 Authorization 头的 APIClient"""
        token = issue_tokens(user)["access"]
        client = APIClient()
        client.raise_request_exception = False
        client.credentials(HTTP_AUTHORIZATION=f"Bearer {token}")
        return client

    @staticmethod
    def anon_client() -> APIClient:
        client = APIClient()
        client.raise_request_exception = False
        return client
