"""
Session Resolver：请求凭证 → Principal | None。

按顺序尝试，互相独立，第一个成功的结果直接返回，不做合并：
  1. cookie-backed Django session（AuthenticationMiddleware 设置的 request.user）
  2. Authorization: Bearer <access token>
  3. fallback session token（X-Session-Token 头或 session_token cookie，查 sessions 表）

角色一律通过 lookup_role() 查询。它是不受调用者视角限制的可信读取，
"查不到 profile" 和 "存储失败" 会被明确区分，不会被误判成 "不是 admin"。
"""
import logging
from typing import Iterable, Optional

from django.conf import settings
from django.contrib.auth import get_user_model
from django.db import DatabaseError

from ..exceptions import ForbiddenError, InternalError, UnauthorizedError
from ..models import Profile
from .tokens import decode_access_token, validate_session_token
from .types import Principal

logger = logging.getLogger(__name__)


def lookup_role(user_id) -> Optional[str]:
    """
    可信路径读取用户角色。

    Returns:
        角色字符串；profile 不存在时返回 None

    Raises:
        InternalError: 存储失败
    """
    try:
        return Profile.objects.filter(user_id=user_id).values_list('role', flat=True).first()
    except DatabaseError as exc:
        raise InternalError('Failed to look up user role', cause=exc) from exc


def _principal_for(user, via) -> Optional[Principal]:
    if user is None or not user.is_active:
        return None

    role = lookup_role(user.pk)
    if role is None:
        logger.warning('user_id=%s authenticated via %s but has no profile; treating as unauthenticated', user.pk, via)
        return None

    return Principal(user_id=user.pk, role=role, via=via, user=user)


def _load_user(user_id):
    User = get_user_model()
    return User.objects.filter(pk=user_id).first()


def _from_cookie_session(request):
    user = getattr(request, 'user', None)
    if user is None or not user.is_authenticated:
        return None
    return _principal_for(user, 'cookie')


def _extract_bearer(request) -> Optional[str]:
    header = request.headers.get('Authorization', '')
    parts = header.split()
    if len(parts) != 2 or parts[0].lower() != 'bearer':
        return None
    return parts[1]


def _from_bearer_token(request):
    token = _extract_bearer(request)
    if not token:
        return None
    user_id = decode_access_token(token)
    if user_id is None:
        return None
    return _principal_for(_load_user(user_id), 'bearer')


def _from_session_token(request):
    token = request.headers.get(settings.SESSION_TOKEN_HEADER) or request.COOKIES.get(settings.SESSION_TOKEN_COOKIE)
    if not token:
        return None
    user_id = validate_session_token(token.strip())
    if user_id is None:
        return None
    return _principal_for(_load_user(user_id), 'session_token')


_RESOLVERS = (
    _from_cookie_session,
    _from_bearer_token,
    _from_session_token,
)


def resolve_principal(request) -> Optional[Principal]:
    """
    解析请求的调用者身份。

    接受 Django HttpRequest 或 DRF Request。
    返回 Principal；全部失败时返回 None（unauthenticated）。
    """
    request = getattr(request, '_request', request)

    for resolver in _RESOLVERS:
        principal = resolver(request)
        if principal is not None:
            return principal
    return None


def require_role(principal: Optional[Principal], allowed_roles: Iterable[str]) -> Principal:
    """
    校验调用者角色。

    Raises:
        UnauthorizedError: 没有 principal
        ForbiddenError:    角色不在 allowed_roles 里
    """
    if principal is None:
        raise UnauthorizedError('Authentication required')

    allowed = set(allowed_roles)
    if principal.role not in allowed:
        logger.warning('user_id=%s with role=%s denied; requires one of %s', principal.user_id, principal.role, sorted(allowed))
        raise ForbiddenError(
            message='You do not have permission to perform this action',
            detail={'required_roles': sorted(allowed)},
        )
    return principal
