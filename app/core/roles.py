"""
app.core.roles
~~~~~~~~~~~~~~

角色枚举与广播资格判断。

角色集合是封闭的：每个判断函数都用 ``match`` 穷举所有成员并以
``assert_never`` 收尾，新增角色时类型检查器会指出所有需要补充的分支。
"""
from __future__ import annotations

from enum import Enum
from typing import assert_never


class Role(str, Enum):
    """系统角色，取值与主后台签发的 JWT ``roles`` 声明一致。"""

    SUPERUSER = "SUPERUSER"
    ADMIN = "ADMIN"
    PERSONAL_BOMBERIL = "PERSONAL_BOMBERIL"
    VOLUNTARIO = "VOLUNTARIO"

    @classmethod
    def parse(cls, value: object) -> Role | None:
        """宽松解析：未知取值返回 ``None``，由调用方决定丢弃还是报错。"""
        if isinstance(value, Role):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().upper())
        except ValueError:
            return None


def is_privileged(role: Role) -> bool:
    """该角色是否拥有跨房间的旁观权限（自动加入所有房间并接收副本）。"""
    match role:
        case Role.SUPERUSER:
            return True
        case Role.ADMIN | Role.PERSONAL_BOMBERIL | Role.VOLUNTARIO:
            return False
        case _:
            assert_never(role)


def has_broadcast_room(role: Role) -> bool:
    """该角色是否拥有 ``role:<name>`` 广播房间。"""
    match role:
        case Role.SUPERUSER | Role.ADMIN | Role.PERSONAL_BOMBERIL | Role.VOLUNTARIO:
            return True
        case _:
            assert_never(role)


def role_label(role: Role) -> str:
    match role:
        case Role.SUPERUSER:
            return "Superusuario"
        case Role.ADMIN:
            return "Administrador"
        case Role.PERSONAL_BOMBERIL:
            return "Personal Bomberil"
        case Role.VOLUNTARIO:
            return "Voluntario"
        case _:
            assert_never(role)


def broadcast_roles() -> list[Role]:
    """所有拥有广播房间的角色（超级用户需要加入其中每一个）。"""
    return [role for role in Role if has_broadcast_room(role)]
