"""
Unit tests for pharmacy/auth。

覆盖：
1. access token 签发 / 校验（过期、签名错误、类型错误）
2. session token 创建 / 校验 / 过期删除 / 撤销 / 定时清理
3. resolve_principal 的三条路径和优先级
4. require_role
5. PrincipalAuthentication（DRF）
"""
from datetime import timedelta
from unittest.mock import patch

import jwt
import pytest
from django.conf import settings
from django.contrib.auth.models import AnonymousUser
from django.db import OperationalError
from django.test import RequestFactory
from django.utils import timezone
from rest_framework.exceptions import PermissionDenied
from rest_framework.request import Request

from pharmacy.auth import (
    Principal,
    cleanup_expired_sessions,
    create_session_token,
    decode_access_token,
    issue_access_token,
    lookup_role,
    require_role,
    resolve_principal,
    revoke_session_token,
)
from pharmacy.auth.authentication import PrincipalAuthentication
from pharmacy.auth.tokens import validate_session_token
from pharmacy.exceptions import ForbiddenError, InternalError, UnauthorizedError
from pharmacy.models import Profile, SessionToken
from tests.factories import UserFactory, make_user


def build_request(method='get', user=None, **extra):
    request = getattr(RequestFactory(), method)('/api/prescriptions/', **extra)
    request.user = user or AnonymousUser()
    return request


# -------------------------------------------------------------------
# Access tokens
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestAccessToken:

    def test_round_trip(self):
        user = UserFactory()
        assert decode_access_token(issue_access_token(user)) == user.pk

    def test_expired(self):
        past = timezone.now() - timedelta(hours=2)
        token = jwt.encode(
            {'sub': '1', 'type': 'access', 'iat': past, 'exp': past + timedelta(minutes=1)},
            settings.SECRET_KEY, algorithm='HS256',
        )
        assert decode_access_token(token) is None

    def test_wrong_signature(self):
        token = jwt.encode(
            {'sub': '1', 'type': 'access', 'exp': timezone.now() + timedelta(hours=1)},
            'another-secret-key-of-at-least-32-bytes', algorithm='HS256',
        )
        assert decode_access_token(token) is None

    def test_wrong_type(self):
        token = jwt.encode(
            {'sub': '1', 'type': 'refresh', 'exp': timezone.now() + timedelta(hours=1)},
            settings.SECRET_KEY, algorithm='HS256',
        )
        assert decode_access_token(token) is None

    def test_garbage(self):
        assert decode_access_token('not.a.jwt') is None


# -------------------------------------------------------------------
# Session tokens
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestSessionToken:

    def test_create_and_validate(self):
        user = UserFactory()
        session = create_session_token(user)

        assert len(session.token) >= 32
        assert validate_session_token(session.token) == user.pk

        session.refresh_from_db()
        assert session.last_accessed_at is not None

    def test_exact_match_only(self):
        session = create_session_token(UserFactory())
        assert validate_session_token(session.token[:-1]) is None
        assert validate_session_token('') is None

    def test_expired_token_is_deleted(self):
        session = create_session_token(UserFactory())
        SessionToken.objects.filter(pk=session.pk).update(expires_at=timezone.now() - timedelta(seconds=1))

        assert validate_session_token(session.token) is None
        assert not SessionToken.objects.filter(pk=session.pk).exists()

    def test_revoke(self):
        session = create_session_token(UserFactory())

        assert revoke_session_token(session.token) is True
        assert revoke_session_token(session.token) is False

    def test_cleanup_removes_only_expired(self):
        user = UserFactory()
        live = create_session_token(user)
        stale = create_session_token(user)
        SessionToken.objects.filter(pk=stale.pk).update(expires_at=timezone.now() - timedelta(minutes=5))

        assert cleanup_expired_sessions() == 1
        assert list(SessionToken.objects.values_list('pk', flat=True)) == [live.pk]


# -------------------------------------------------------------------
# resolve_principal
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestResolvePrincipal:

    def test_unauthenticated(self):
        assert resolve_principal(build_request()) is None

    def test_cookie_session(self):
        user = make_user('patient')

        principal = resolve_principal(build_request(user=user))

        assert principal == Principal(user_id=user.pk, role='patient', via='cookie')
        assert principal.user == user

    def test_bearer_token(self):
        user = make_user('admin')

        principal = resolve_principal(build_request(HTTP_AUTHORIZATION=f'Bearer {issue_access_token(user)}'))

        assert principal.user_id == user.pk
        assert principal.role == 'admin'
        assert principal.via == 'bearer'

    def test_session_token_header(self):
        user = make_user('doctor')
        session = create_session_token(user)

        principal = resolve_principal(build_request(HTTP_X_SESSION_TOKEN=session.token))

        assert principal.user_id == user.pk
        assert principal.via == 'session_token'

    def test_session_token_cookie(self):
        user = make_user('patient')
        session = create_session_token(user)
        request = build_request()
        request.COOKIES[settings.SESSION_TOKEN_COOKIE] = session.token

        assert resolve_principal(request).user_id == user.pk

    def test_cookie_session_wins(self):
        cookie_user = make_user('patient')
        bearer_user = make_user('admin')

        principal = resolve_principal(build_request(
            user=cookie_user, HTTP_AUTHORIZATION=f'Bearer {issue_access_token(bearer_user)}',
        ))

        assert principal.user_id == cookie_user.pk
        assert principal.role == 'patient'

    def test_invalid_bearer_falls_through_to_session_token(self):
        user = make_user('patient')
        session = create_session_token(user)

        principal = resolve_principal(build_request(
            HTTP_AUTHORIZATION='Bearer garbage', HTTP_X_SESSION_TOKEN=session.token,
        ))

        assert principal.via == 'session_token'

    def test_user_without_profile_is_unauthenticated(self):
        user = UserFactory()
        assert resolve_principal(build_request(HTTP_AUTHORIZATION=f'Bearer {issue_access_token(user)}')) is None

    def test_inactive_user(self):
        user = make_user('admin', is_active=False)
        assert resolve_principal(build_request(HTTP_AUTHORIZATION=f'Bearer {issue_access_token(user)}')) is None

    def test_role_read_fresh_each_time(self):
        user = make_user('patient')
        Profile.objects.filter(user=user).update(role='admin')

        assert resolve_principal(build_request(user=user)).role == 'admin'

    def test_accepts_drf_request(self):
        user = make_user('patient')
        request = Request(build_request(HTTP_AUTHORIZATION=f'Bearer {issue_access_token(user)}'))

        assert resolve_principal(request).user_id == user.pk


@pytest.mark.django_db
class TestLookupRole:

    def test_missing_profile(self):
        assert lookup_role(UserFactory().pk) is None

    def test_store_failure_is_not_a_missing_role(self):
        with patch.object(Profile.objects, 'filter', side_effect=OperationalError('timeout')):
            with pytest.raises(InternalError) as exc_info:
                lookup_role(1)

        assert exc_info.value.reason == 'timeout'


# -------------------------------------------------------------------
# require_role
# -------------------------------------------------------------------

class TestRequireRole:

    def test_none_is_unauthorized(self):
        with pytest.raises(UnauthorizedError) as exc_info:
            require_role(None, ['admin'])
        assert exc_info.value.http_status == 401

    def test_wrong_role_is_forbidden(self):
        with pytest.raises(ForbiddenError) as exc_info:
            require_role(Principal(user_id=1, role='patient'), ['admin'])

        assert exc_info.value.http_status == 403
        assert exc_info.value.detail == {'required_roles': ['admin']}

    def test_allowed(self):
        principal = Principal(user_id=1, role='doctor')
        assert require_role(principal, ['doctor', 'admin']) is principal


# -------------------------------------------------------------------
# PrincipalAuthentication
# -------------------------------------------------------------------

@pytest.mark.django_db
class TestPrincipalAuthentication:

    def test_no_credentials(self):
        assert PrincipalAuthentication().authenticate(Request(build_request())) is None

    def test_bearer(self):
        user = make_user('admin')
        request = Request(build_request('post', HTTP_AUTHORIZATION=f'Bearer {issue_access_token(user)}'))

        authed_user, principal = PrincipalAuthentication().authenticate(request)

        assert authed_user == user
        assert principal.role == 'admin'

    def test_cookie_session_requires_csrf(self):
        user = make_user('patient')
        request = Request(build_request('post', user=user))

        with pytest.raises(PermissionDenied):
            PrincipalAuthentication().authenticate(request)

    def test_cookie_session_safe_method(self):
        user = make_user('patient')

        authed_user, principal = PrincipalAuthentication().authenticate(Request(build_request(user=user)))

        assert principal.via == 'cookie'
