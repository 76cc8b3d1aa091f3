"""
统一异常处理器。

挂到 DRF 的 EXCEPTION_HANDLER setting 上。
所有响应（无论成功还是失败）前端都能用同一套逻辑判断：
  response.type 存在  → 出问题了
  没有 type 字段      → 成功

统一错误响应格式：
{
    "type":    "validation_error" | "unauthorized" | "forbidden" | "not_found" | "block" | "error",
    "code":    "REFILLS_EXHAUSTED",
    "message": "No refills remaining for this prescription",
    "detail":  { ... }  // 可选
}
"""
import logging

from django.db import DatabaseError
from django.http import JsonResponse
from rest_framework.exceptions import NotAuthenticated, AuthenticationFailed, PermissionDenied
from rest_framework.exceptions import ValidationError as DRFValidationError
from rest_framework.views import exception_handler as drf_default_handler

from .exceptions import BaseAppException, InternalError

logger = logging.getLogger(__name__)


def _render(exc):
    body = {
        'type': exc.type,
        'code': exc.code,
        'message': exc.message,
    }
    # InternalError 的 detail 可能带底层信息，不返回给调用方
    if exc.detail is not None and not isinstance(exc, InternalError):
        body['detail'] = exc.detail
    return JsonResponse(body, status=exc.http_status)


def unified_exception_handler(exc, context):
    """
    DRF exception handler entry point.

    优先级：
    1. BaseAppException 及其子类 → 统一格式
    2. DRF 自带的 ValidationError / 认证失败 / CSRF 拒绝 → 转成统一格式
    3. 数据库异常 → InternalError
    4. 其他异常 → 交给 DRF 默认处理
    """
    view = context.get('view')
    view_name = type(view).__name__ if view is not None else '-'

    # --- 1. 我们自己的异常体系 ---
    if isinstance(exc, BaseAppException):
        if isinstance(exc, InternalError):
            logger.error('[%s] internal error: %s', view_name, exc.reason, exc_info=exc.cause or exc)
        return _render(exc)

    # --- 2. DRF 自带的 ValidationError / 认证失败 ---
    if isinstance(exc, DRFValidationError):
        body = {
            'type': 'validation_error',
            'code': 'VALIDATION_ERROR',
            'message': 'Request validation failed',
            'detail': exc.detail,
        }
        return JsonResponse(body, status=400)

    if isinstance(exc, (NotAuthenticated, AuthenticationFailed)):
        body = {
            'type': 'unauthorized',
            'code': 'UNAUTHORIZED',
            'message': str(exc.detail),
        }
        return JsonResponse(body, status=401)

    if isinstance(exc, PermissionDenied):
        body = {
            'type': 'forbidden',
            'code': 'FORBIDDEN',
            'message': str(exc.detail),
        }
        return JsonResponse(body, status=403)

    # --- 3. 存储层异常（超时 / 连接断开） ---
    if isinstance(exc, DatabaseError):
        logger.error('[%s] store failure: %s', view_name, exc, exc_info=exc)
        return _render(InternalError(cause=exc))

    # --- 4. 其他的交给 DRF 默认处理 ---
    return drf_default_handler(exc, context)
