"""
Principal — 解析请求凭证后得到的调用者身份。

service 层只认识 Principal，不关心它来自 cookie、Bearer token 还是 fallback session token。
"""

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Principal:
    user_id: int
    role: str
    via: str = ''                                        # "cookie" / "bearer" / "session_token"
    user: Any = field(default=None, compare=False, repr=False)
