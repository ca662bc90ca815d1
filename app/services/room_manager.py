"""
app.services.room_manager
~~~~~~~~~~~~~~~~~~~~~~~~~

房间成员管理 —— 记录每条连接加入了哪些逻辑房间。

房间分三类:
  - ``user:<id>``                        —— 私人收件箱，每条连接恰好属于自己的那一个
  - ``role:<ROLE>``                      —— 角色广播组，数量不限
  - ``conversation:<id>`` / ``group:<id>`` —— 会话线程，同一时刻最多一个

超级用户始终是所有角色房间的成员，并在线程房间首次使用时被自动拉入；
这些自动成员关系不算作“当前线程”，切换线程时也不会被移除。
成员关系随连接生命周期重建，不持久化。
"""
from __future__ import annotations

from app.core.logging import get_logger
from app.core.roles import Role
from app.services.connection_registry import ConnectionRegistry

logger = get_logger(__name__)

USER_PREFIX = "user:"
ROLE_PREFIX = "role:"
CONVERSATION_PREFIX = "conversation:"
GROUP_PREFIX = "group:"


def user_room(user_id: int) -> str:
    return f"{USER_PREFIX}{user_id}"


def role_room(role: Role) -> str:
    return f"{ROLE_PREFIX}{role.value}"


def conversation_room(conversation_id: int) -> str:
    return f"{CONVERSATION_PREFIX}{conversation_id}"


def group_room(conversation_id: int) -> str:
    return f"{GROUP_PREFIX}{conversation_id}"


def thread_room(conversation_id: int, is_group: bool) -> str:
    """会话对应的线程房间名。"""
    return group_room(conversation_id) if is_group else conversation_room(conversation_id)


def is_thread_room(room: str) -> bool:
    return room.startswith(CONVERSATION_PREFIX) or room.startswith(GROUP_PREFIX)


def is_role_room(room: str) -> bool:
    return room.startswith(ROLE_PREFIX)


class RoomManager:
    """房间成员管理器。

    Attributes:
        registry: 连接注册表，用于查找超级用户连接。
    """

    def __init__(self, registry: ConnectionRegistry) -> None:
        self.registry = registry
        self._members: dict[str, set[str]] = {}
        self._rooms_by_connection: dict[str, set[str]] = {}
        # 连接主动打开的线程房间；超级用户的自动成员关系不记录在这里
        self._active_thread: dict[str, str] = {}

    def join(self, connection_id: str, room: str) -> None:
        """加入房间（幂等）。"""
        self._members.setdefault(room, set()).add(connection_id)
        self._rooms_by_connection.setdefault(connection_id, set()).add(room)

    def leave(self, connection_id: str, room: str) -> None:
        members = self._members.get(room)
        if members is not None:
            members.discard(connection_id)
            if not members:
                del self._members[room]
        rooms = self._rooms_by_connection.get(connection_id)
        if rooms is not None:
            rooms.discard(room)
            if not rooms:
                del self._rooms_by_connection[connection_id]

    def _is_privileged(self, connection_id: str) -> bool:
        connection = self.registry.get(connection_id)
        return connection is not None and connection.principal.is_superuser

    def enter_thread(self, connection_id: str, room: str) -> None:
        """切换到线程 ``room``。

        普通连接离开之前打开的线程；超级用户保留所有线程房间的成员关系，
        只更新当前线程。
        """
        if not is_thread_room(room):
            raise ValueError(f"not a thread room: {room}")
        previous = self._active_thread.get(connection_id)
        if previous is not None and previous != room and not self._is_privileged(connection_id):
            self.leave(connection_id, previous)
        self.join(connection_id, room)
        self._active_thread[connection_id] = room

    def exit_thread(self, connection_id: str, room: str) -> bool:
        """离开线程 ``room``。``room`` 不是当前线程时返回 ``False``。"""
        if self._active_thread.get(connection_id) != room:
            return False
        del self._active_thread[connection_id]
        if not self._is_privileged(connection_id):
            self.leave(connection_id, room)
        return True

    def members_of(self, room: str) -> set[str]:
        """房间当前成员（副本）。"""
        return set(self._members.get(room, ()))

    def rooms_of(self, connection_id: str) -> set[str]:
        return set(self._rooms_by_connection.get(connection_id, ()))

    def is_member(self, connection_id: str, room: str) -> bool:
        return connection_id in self._members.get(room, ())

    def current_thread(self, connection_id: str) -> str | None:
        """连接主动打开的线程房间；没有时返回 ``None``。"""
        return self._active_thread.get(connection_id)

    def ensure_privileged_membership(self, room: str) -> None:
        """把所有在线超级用户连接拉入 ``room``（已是成员则跳过）。"""
        for connection in self.registry.superuser_connections():
            if not self.is_member(connection.connection_id, room):
                self.join(connection.connection_id, room)
                logger.debug(
                    "超级用户自动加入房间 | conn=%s | room=%s",
                    connection.connection_id, room,
                )

    def drop_connection(self, connection_id: str) -> set[str]:
        """移除连接的全部成员关系，返回其之前所在的房间。"""
        self._active_thread.pop(connection_id, None)
        rooms = self._rooms_by_connection.pop(connection_id, set())
        for room in rooms:
            members = self._members.get(room)
            if members is None:
                continue
            members.discard(connection_id)
            if not members:
                del self._members[room]
        return rooms

    def room_names(self) -> list[str]:
        return list(self._members)
