"""
app.services.connection_registry
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

连接注册表 —— 维护「连接 ID → 已认证身份」的映射。

进程启动时为空，不持久化；由 FastAPI lifespan 创建一次并通过
``app.state`` 注入到需要它的组件。本身不发送任何事件，
上下线通知由 ``PresenceNotifier`` 在其之上完成。

所有方法都是同步的，在单个事件循环内调用时无需加锁。
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from app.core.exceptions import AuthenticationError
from app.core.logging import get_logger
from app.core.security import Principal

logger = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class Connection:
    """一条存活的 WebSocket 连接。

    Attributes:
        connection_id: 连接唯一标识。
        principal: 连接背后的已认证身份。
        websocket: 底层传输对象（需支持 ``send_json`` / ``close``）。
        connected_at: 注册时间。
        last_seen: 最近一次收到该连接事件的时间。
    """

    connection_id: str
    principal: Principal
    websocket: Any = None
    connected_at: datetime = field(default_factory=_now)
    last_seen: datetime = field(default_factory=_now)

    @property
    def user_id(self) -> int:
        return self.principal.id


class ConnectionRegistry:
    """连接注册表。

    Attributes:
        disposed: 是否已销毁（销毁后拒绝新的注册）。
    """

    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}
        self.disposed: bool = False

    def register(
        self,
        connection_id: str,
        principal: Principal | None,
        websocket: Any = None,
    ) -> Connection:
        """登记一条已认证连接。

        Raises:
            AuthenticationError: ``principal`` 为 ``None``（token 校验未通过）。
            RuntimeError: 注册表已销毁。
        """
        if principal is None:
            raise AuthenticationError("Connection is not authenticated")
        if self.disposed:
            raise RuntimeError("ConnectionRegistry has been disposed")

        connection = Connection(
            connection_id=connection_id,
            principal=principal,
            websocket=websocket,
        )
        self._connections[connection_id] = connection
        logger.debug(
            "连接已登记 | conn=%s | user=%s | 在线连接: %d",
            connection_id, principal.id, len(self._connections),
        )
        return connection

    def unregister(self, connection_id: str) -> Principal | None:
        """移除连接并返回其身份；连接不存在时返回 ``None``（重复清理不是错误）。"""
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return None
        return connection.principal

    def get(self, connection_id: str) -> Connection | None:
        return self._connections.get(connection_id)

    def touch(self, connection_id: str) -> None:
        """刷新连接的 ``last_seen``。"""
        connection = self._connections.get(connection_id)
        if connection is not None:
            connection.last_seen = _now()

    def list_online_user_ids(self) -> set[int]:
        """当前在线的用户 ID（去重）。"""
        return {conn.principal.id for conn in self._connections.values()}

    def connections_of(self, user_id: int) -> list[Connection]:
        return [c for c in self._connections.values() if c.principal.id == user_id]

    def is_user_online(self, user_id: int) -> bool:
        return any(c.principal.id == user_id for c in self._connections.values())

    def superuser_connections(self) -> list[Connection]:
        """所有超级用户的连接。

        线性扫描：单个消防队的连接规模很小，不做索引。
        """
        return [c for c in self._connections.values() if c.principal.is_superuser]

    def all_connections(self) -> list[Connection]:
        return list(self._connections.values())

    def all_connection_ids(self) -> list[str]:
        return list(self._connections)

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._connections

    def dispose(self) -> None:
        """清空注册表。应在 lifespan shutdown 中调用。"""
        self._connections.clear()
        self.disposed = True
