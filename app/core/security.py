"""
app.core.security
~~~~~~~~~~~~~~~~~

JWT 校验 —— 把主后台签发的 access token 解析为强类型的 ``Principal``。

token 由主后台（``/auth/login``）签发，载荷形如::

    {"sub": 12, "email": "...", "username": "...", "roles": ["ADMIN"],
     "iss": "bomberos-api", "aud": "web", "exp": ...}

本服务只负责校验，不提供登录接口；``create_access_token`` 仅用于
开发调试与测试。
"""
from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import ExpiredSignatureError, JWTError, jwt

from app.core.exceptions import AuthenticationError
from app.core.logging import get_logger
from app.core.roles import Role, is_privileged
from app.core.settings import Settings, settings

logger = get_logger(__name__)

_BEARER_PREFIX = "Bearer "


@dataclass(frozen=True, slots=True)
class Principal:
    """已认证的调用方身份，由 ``TokenVerifier`` 生成，聊天子系统只读不改。"""

    id: int
    roles: frozenset[Role] = field(default_factory=frozenset)
    email: str = ""
    username: str = ""

    @property
    def is_superuser(self) -> bool:
        return any(is_privileged(role) for role in self.roles)

    @property
    def display_name(self) -> str:
        return self.username or self.email or f"user-{self.id}"


def _parse_roles(raw: Any) -> frozenset[Role]:
    # 与主后台 JwtStrategy 一致：未知角色直接丢弃
    if not isinstance(raw, (list, tuple)):
        return frozenset()
    parsed = (Role.parse(item) for item in raw)
    return frozenset(role for role in parsed if role is not None)


class TokenVerifier:
    """基于 python-jose 的 HS256 token 校验器。

    Attributes:
        secret: 签名密钥。
        algorithm: 签名算法。
        issuer: 期望的 ``iss``。
        audience: 期望的 ``aud``。
    """

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        issuer: str | None = None,
        audience: str | None = None,
    ) -> None:
        self.secret = secret
        self.algorithm = algorithm
        self.issuer = issuer
        self.audience = audience

    @classmethod
    def from_settings(cls, cfg: Settings = settings) -> TokenVerifier:
        return cls(
            secret=cfg.JWT_SECRET,
            algorithm=cfg.JWT_ALGORITHM,
            issuer=cfg.JWT_ISSUER,
            audience=cfg.JWT_AUDIENCE,
        )

    def verify(self, token: str | None) -> Principal:
        """校验 token 并返回 ``Principal``。

        Args:
            token: 原始 token，可带 ``Bearer`` 前缀。

        Raises:
            AuthenticationError: token 缺失、签名错误、过期或载荷不合法。
        """
        if not token:
            raise AuthenticationError("Missing auth token")
        if token.startswith(_BEARER_PREFIX):
            token = token[len(_BEARER_PREFIX):]

        try:
            payload: dict[str, Any] = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                # 主后台把数字 ID 直接放进 sub，jose 默认要求字符串
                options={"verify_sub": False, "verify_aud": self.audience is not None},
            )
        except ExpiredSignatureError as e:
            raise AuthenticationError("Token expired") from e
        except JWTError as e:
            logger.debug("token 校验失败: %s", e)
            raise AuthenticationError(str(e) or "Invalid token") from e

        try:
            user_id = int(payload["sub"])
        except (KeyError, TypeError, ValueError) as e:
            raise AuthenticationError("Token subject is not a user id") from e

        return Principal(
            id=user_id,
            roles=_parse_roles(payload.get("roles")),
            email=str(payload.get("email") or ""),
            username=str(payload.get("username") or ""),
        )


def create_access_token(
    user_id: int,
    roles: Iterable[Role | str] = (),
    *,
    email: str = "",
    username: str = "",
    expires_delta: timedelta | None = None,
    cfg: Settings = settings,
) -> str:
    """签发一个与主后台格式一致的 access token（开发 / 测试用）。"""
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(hours=cfg.ACCESS_TOKEN_EXPIRE_HOURS)
    )
    claims: dict[str, Any] = {
        "sub": str(user_id),
        "email": email,
        "username": username,
        "roles": [r.value if isinstance(r, Role) else r for r in roles],
        "iss": cfg.JWT_ISSUER,
        "aud": cfg.JWT_AUDIENCE,
        "exp": expire,
    }
    return jwt.encode(claims, cfg.JWT_SECRET, algorithm=cfg.JWT_ALGORITHM)
