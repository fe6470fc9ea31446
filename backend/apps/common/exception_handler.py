"""
全局异常处理器（DRF 入口）

所有接口错误都收敛为 {code, message, data, extra}：
- BizError 及子类原样输出；运行实例相关错误（编排失败、子网耗尽等）额外记一条告警日志
- DRF / Django 内置异常先映射为 BizError；并发写入撞上唯一约束时映射为 409
- 其余异常记录堆栈，返回 50000，extra 只带 request_id
"""

from __future__ import annotations

from typing import Any, Callable

from django.core.exceptions import ObjectDoesNotExist
from django.db import IntegrityError
from django.http import Http404
from rest_framework import status
from rest_framework.exceptions import (
    AuthenticationFailed,
    MethodNotAllowed,
    NotAuthenticated,
    NotFound as DRFNotFound,
    ParseError,
    PermissionDenied as DRFPermissionDenied,
    ValidationError as DRFValidationError,
)
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler

from .exceptions import (
    AuthError,
    BadRequestError,
    BizError,
    ConflictError,
    InstanceError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError as BizValidationError,
)
from .infra.logger import get_logger, logger_extra
from .response import api_response, payload_from_biz_error
from .utils.request_context import get_request_context

logger = get_logger(__name__)


def _extract_message(detail: Any) -> str:
    """取 DRF detail（str / list / dict）中的第一条可读信息"""
    if isinstance(detail, str):
        return detail
    if isinstance(detail, list) and detail:
        return _extract_message(detail[0])
    if isinstance(detail, dict) and detail:
        return _extract_message(next(iter(detail.values())))
    return str(detail)


def _detail(exc: Exception) -> str:
    return _extract_message(getattr(exc, "detail", str(exc)))


# 按顺序匹配，先命中先返回
_MAPPERS: list[tuple[tuple[type[Exception], ...], Callable[[Exception], BizError]]] = [
    ((DRFValidationError,), lambda exc: BizValidationError(message=_detail(exc), extra={"raw_detail": exc.detail})),
    ((ParseError,), lambda exc: BadRequestError(message=_detail(exc))),
    ((AuthenticationFailed, NotAuthenticated), lambda exc: AuthError(message=_detail(exc))),
    ((DRFPermissionDenied,), lambda exc: PermissionDeniedError(message=_detail(exc))),
    ((DRFNotFound, Http404, ObjectDoesNotExist), lambda exc: NotFoundError()),
    # 同一（比赛, 题目, 队伍）被并发创建，或子网被另一请求抢占
    ((IntegrityError,), lambda exc: ConflictError(message="instance state changed concurrently, retry later")),
]


def _map_exception(exc: Exception) -> BizError | None:
    for types, build in _MAPPERS:
        if isinstance(exc, types):
            return build(exc)
    return None


def _biz_response(exc: BizError) -> Response:
    if isinstance(exc, InstanceError):
        logger.warning(
            "运行实例操作失败",
            extra=logger_extra({"code": exc.code, "error": exc.message, "error_type": type(exc).__name__}),
        )
    return Response(payload_from_biz_error(exc), status=exc.http_status)


def _unexpected_response(exc: Exception, context: dict) -> Response:
    ctx = get_request_context()
    req = context.get("request")
    view = context.get("view")
    logger.exception(
        "接口出现未处理的异常",
        exc_info=exc,
        extra=logger_extra({
            "view": type(view).__name__ if view is not None else None,
            "method": getattr(req, "method", None),
        }),
    )
    return api_response(
        code=50000,
        message="internal server error",
        data=None,
        http_status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        extra={"request_id": ctx.get("request_id")},
    )


def custom_exception_handler(exc: Exception, context: dict) -> Response | None:
    """
    DRF EXCEPTION_HANDLER 入口

    BizError → 映射表 → DRF 默认处理（如 405）包一层统一结构 → 500
    """
    if isinstance(exc, BizError):
        return _biz_response(exc)

    mapped = _map_exception(exc)
    if mapped is not None:
        return _biz_response(mapped)

    drf_response = drf_exception_handler(exc, context)
    if drf_response is not None:
        code = 40000 if drf_response.status_code < 500 else 50000
        if isinstance(exc, MethodNotAllowed):
            code = 40500
        return api_response(
            code=code,
            message=_extract_message(drf_response.data),
            data=None,
            http_status=drf_response.status_code,
        )

    return _unexpected_response(exc, context)
