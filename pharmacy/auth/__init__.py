from .resolver import lookup_role, require_role, resolve_principal
from .tokens import (
    cleanup_expired_sessions,
    create_session_token,
    decode_access_token,
    issue_access_token,
    revoke_session_token,
)
from .types import Principal

__all__ = [
    'Principal',
    'cleanup_expired_sessions',
    'create_session_token',
    'decode_access_token',
    'issue_access_token',
    'lookup_role',
    'require_role',
    'resolve_principal',
    'revoke_session_token',
]
