"""
JWT 工具封装：颁发用户访问令牌、签发与校验自定义用途的短期令牌

- 依赖 SimpleJWT：用户令牌走 RefreshToken，自定义令牌直接复用其 TokenBackend 与签名配置
- 自定义令牌通过 token_use 声明用途，校验时必须一致，避免不同用途的令牌互相冒用
"""

from __future__ import annotations

from typing import Any, Dict

from rest_framework_simplejwt.backends import TokenBackend
from rest_framework_simplejwt.exceptions import TokenBackendError
from rest_framework_simplejwt.settings import api_settings
from rest_framework_simplejwt.tokens import RefreshToken

from apps.common.exceptions import AuthError, TokenError


def issue_tokens(user: Any) -> Dict[str, str]:
    """为指定用户颁发 refresh/access 令牌"""
    try:
        refresh = RefreshToken.for_user(user)
    except Exception as exc:  # pragma: no cover - SimpleJWT 内部异常
        raise AuthError(message="failed to issue token") from exc
    return {
        "refresh": str(refresh),
        "access": str(refresh.access_token),
    }


def _token_backend() -> TokenBackend:
    return TokenBackend(api_settings.ALGORITHM, api_settings.SIGNING_KEY)


def encode_claims(claims: Dict[str, Any]) -> str:
    """
    按给定 claims 签发令牌

    claims 由调用方完整给出（含 iat/exp），同样的输入得到同样的令牌
    """
    return _token_backend().encode(dict(claims))


def decode_claims(token: str, *, token_use: str) -> Dict[str, Any]:
    """校验签名、过期时间与用途，失败统一抛 TokenError"""
    if not token:
        raise TokenError()
    try:
        payload = _token_backend().decode(token, verify=True)
    except TokenBackendError as exc:
        raise TokenError() from exc
    if payload.get("token_use") != token_use:
        raise TokenError(message="token use mismatch")
    return payload
