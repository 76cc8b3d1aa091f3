"""
Token 签发与校验。

两类凭证：
- access token: JWT（PyJWT, HS256），放在 Authorization: Bearer 头里，无服务端状态
- session token: 随机不透明字符串，保存在 sessions 表，带过期时间，cookie 丢失时的 fallback
"""
import logging
import secrets
from datetime import timedelta
from typing import Optional

import jwt
from django.conf import settings
from django.utils import timezone

from ..models import SessionToken

logger = logging.getLogger(__name__)


def issue_access_token(user) -> str:
    """Generate a signed access token for an authenticated user."""
    now = timezone.now()
    payload = {
        'sub': str(user.pk),
        'type': 'access',
        'iat': now,
        'exp': now + timedelta(seconds=settings.ACCESS_TOKEN_TTL_SECONDS),
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ACCESS_TOKEN_ALGORITHM)


def decode_access_token(token: str) -> Optional[int]:
    """Verify an access token and return the user id it was issued for (or None)."""
    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ACCESS_TOKEN_ALGORITHM],
            options={'require': ['sub', 'exp']},
        )
    except jwt.ExpiredSignatureError:
        logger.info('access token expired')
        return None
    except jwt.InvalidTokenError:
        return None

    if payload.get('type') != 'access':
        return None
    try:
        return int(payload['sub'])
    except (TypeError, ValueError):
        return None


def create_session_token(user) -> SessionToken:
    """Create a fallback session token, stored server-side with an expiry."""
    session = SessionToken.objects.create(
        user=user,
        token=secrets.token_urlsafe(32),
        expires_at=timezone.now() + timedelta(seconds=settings.SESSION_TOKEN_TTL_SECONDS),
    )
    logger.info('session token created for user_id=%s, expires_at=%s', user.pk, session.expires_at.isoformat())
    return session


def validate_session_token(token: str) -> Optional[int]:
    """
    精确匹配查找 session token。

    - 不存在 → None
    - 已过期 → 删除该 token，返回 None
    - 有效   → 刷新 last_accessed_at，返回 user_id
    """
    if not token:
        return None

    session = SessionToken.objects.filter(token=token).only('id', 'user_id', 'expires_at').first()
    if session is None:
        return None

    now = timezone.now()
    if now > session.expires_at:
        SessionToken.objects.filter(pk=session.pk).delete()
        logger.info('expired session token removed for user_id=%s', session.user_id)
        return None

    SessionToken.objects.filter(pk=session.pk).update(last_accessed_at=now)
    return session.user_id


def revoke_session_token(token: str) -> bool:
    deleted, _ = SessionToken.objects.filter(token=token).delete()
    return deleted > 0


def cleanup_expired_sessions() -> int:
    """删除所有过期 session token，返回删除条数。"""
    deleted, _ = SessionToken.objects.filter(expires_at__lt=timezone.now()).delete()
    if deleted:
        logger.info('cleaned up %d expired session tokens', deleted)
    return deleted
