"""
app.services.transport
~~~~~~~~~~~~~~~~~~~~~~

WebSocket 传输层 —— 把事件发给单条连接、一个房间或全部连接。

线上格式统一为 ``{"event": <name>, "data": <payload>}``。
发送失败只记录日志，不在这里移除连接：断开的连接会在自己的接收循环里
收到 ``WebSocketDisconnect`` 并走 ``ChatGateway.disconnect`` 完成清理。
"""
from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from typing import Any

from app.core.logging import get_logger
from app.services.connection_registry import Connection, ConnectionRegistry
from app.services.room_manager import RoomManager

logger = get_logger(__name__)

# 按接收方生成载荷；返回 None 表示跳过该连接
PayloadFactory = Callable[[Connection], Any]


def envelope(event: str, data: Any) -> dict[str, Any]:
    return {"event": event, "data": data}


class WebSocketTransport:
    """基于连接注册表和房间管理器的事件分发器。

    Attributes:
        registry: 连接注册表（连接 ID → websocket）。
        rooms: 房间成员管理器。
    """

    def __init__(self, registry: ConnectionRegistry, rooms: RoomManager) -> None:
        self.registry = registry
        self.rooms = rooms

    async def emit_to_connection(self, connection_id: str, event: str, data: Any) -> bool:
        """发送给单条连接，返回是否成功。"""
        connection = self.registry.get(connection_id)
        if connection is None or connection.websocket is None:
            return False
        try:
            await connection.websocket.send_json(envelope(event, data))
            return True
        except Exception as e:
            logger.warning("发送失败 | conn=%s | event=%s | %s", connection_id, event, e)
            return False

    async def emit_to_connections(
        self,
        connection_ids: Iterable[str],
        event: str,
        data: Any | None = None,
        *,
        payload_for: PayloadFactory | None = None,
    ) -> int:
        """并发发送给多条连接，返回成功条数。

        ``payload_for`` 不为空时按接收方逐个生成载荷（如 ``isOwn``）。
        """
        targets: list[tuple[Connection, Any]] = []
        for connection_id in dict.fromkeys(connection_ids):
            connection = self.registry.get(connection_id)
            if connection is None or connection.websocket is None:
                continue
            payload = payload_for(connection) if payload_for is not None else data
            if payload is None:
                continue
            targets.append((connection, payload))

        if not targets:
            return 0

        tasks = [conn.websocket.send_json(envelope(event, payload)) for conn, payload in targets]
        results = await asyncio.gather(*tasks, return_exceptions=True)
        sent = 0
        for (conn, _), result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning(
                    "广播失败 | conn=%s | event=%s | %s", conn.connection_id, event, result,
                )
            else:
                sent += 1
        return sent

    async def emit_to_room(
        self,
        room: str,
        event: str,
        data: Any,
        *,
        exclude: Iterable[str] = (),
    ) -> int:
        """发送给房间内所有成员（可排除部分连接）。"""
        excluded = set(exclude)
        members = [cid for cid in self.rooms.members_of(room) if cid not in excluded]
        return await self.emit_to_connections(members, event, data)

    async def emit_to_all(self, event: str, data: Any) -> int:
        """发送给所有在线连接。"""
        return await self.emit_to_connections(self.registry.all_connection_ids(), event, data)
