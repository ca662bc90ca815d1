"""
app.services.presence
~~~~~~~~~~~~~~~~~~~~~

在线状态通知 —— 根据连接注册表推导用户上下线，并向全体连接广播 ``userStatus``。

一个用户可能同时打开多个标签页：只有「0 条连接 → ≥1 条」时广播 online，
只有「≥1 条 → 0 条」时广播 offline，每次转换恰好一次。
"""
from __future__ import annotations

from app.core.logging import get_logger
from app.schemas.chat import UserStatusData
from app.services.connection_registry import ConnectionRegistry
from app.services.transport import WebSocketTransport

logger = get_logger(__name__)

USER_STATUS_EVENT = "userStatus"


class PresenceNotifier:
    """在线状态通知器。

    Attributes:
        registry: 连接注册表。
        transport: 事件分发器。
    """

    def __init__(self, registry: ConnectionRegistry, transport: WebSocketTransport) -> None:
        self.registry = registry
        self.transport = transport
        # 已广播为 online 的用户；保证每次转换只广播一次
        self._announced: set[int] = set()

    async def on_connect(self, user_id: int) -> bool:
        """连接登记之后调用。返回是否广播了 online。"""
        if user_id in self._announced or not self.registry.is_user_online(user_id):
            return False
        self._announced.add(user_id)
        logger.info("用户上线 | user=%s | 在线用户: %d", user_id, len(self._announced))
        await self.transport.emit_to_all(
            USER_STATUS_EVENT, UserStatusData(user_id=user_id, status="online").dump(),
        )
        return True

    async def on_disconnect(self, user_id: int) -> bool:
        """连接注销之后调用。返回是否广播了 offline。

        同一用户仍有其它存活连接时不广播；重复调用是安全的空操作。
        """
        if self.registry.is_user_online(user_id):
            return False
        if user_id not in self._announced:
            return False
        self._announced.discard(user_id)
        logger.info("用户下线 | user=%s | 在线用户: %d", user_id, len(self._announced))
        await self.transport.emit_to_all(
            USER_STATUS_EVENT, UserStatusData(user_id=user_id, status="offline").dump(),
        )
        return True

    def online_user_ids(self) -> list[int]:
        """当前在线用户快照（升序）。"""
        return sorted(self.registry.list_online_user_ids())

    def reset(self) -> None:
        self._announced.clear()
