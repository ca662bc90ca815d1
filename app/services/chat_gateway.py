"""
app.services.chat_gateway
~~~~~~~~~~~~~~~~~~~~~~~~~

聊天网关 —— 串起连接生命周期与客户端事件处理。

连接流程::

    token 校验 → ConnectionRegistry 登记 → 加入默认房间 → PresenceNotifier 广播
    → 后续事件经 ``handle_event`` 分发（sendMessage 交给 MessageRouter）

``handle_event`` 是唯一的错误边界：业务异常和未知异常都在这里转换为
``{success: false, error}`` 回执，单条连接的坏输入不会影响其它连接。
"""
from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import ValidationError

from app.core.exceptions import AuthenticationError, ChatError, InvalidMessageError, NotFoundError
from app.core.logging import get_logger
from app.core.rate_limit import WebSocketRateLimiter
from app.core.roles import broadcast_roles, has_broadcast_room
from app.core.security import Principal, TokenVerifier
from app.schemas.chat import (
    AckData,
    ClientEnvelope,
    ConnectedData,
    ErrorData,
    JoinConversationPayload,
    SendMessagePayload,
    TypingData,
    TypingPayload,
)
from app.services.connection_registry import Connection, ConnectionRegistry
from app.services.message_router import MessageRouter
from app.services.ports import ConversationRecord, ConversationStore, MessageStore, UserDirectory
from app.services.presence import PresenceNotifier
from app.services.room_manager import RoomManager, role_room, thread_room, user_room
from app.services.transport import WebSocketTransport

logger = get_logger(__name__)

# 认证失败时使用的关闭码（4000-4999 为应用自定义区间）
WS_CLOSE_UNAUTHORIZED = 4001

Handler = Callable[[Connection, dict[str, Any]], Awaitable[Any]]


class ChatGateway:
    """聊天网关，进程内唯一，由 lifespan 通过 ``create()`` 构造、``dispose()`` 销毁。

    Attributes:
        verifier: token 校验器。
        registry: 连接注册表。
        rooms: 房间成员管理器。
        transport: 事件分发器。
        presence: 在线状态通知器。
        router: 消息扇出路由器。
        conversations: 会话存储（加入会话时校验参与者）。
        limiter: sendMessage 限流器。
    """

    def __init__(
        self,
        verifier: TokenVerifier,
        registry: ConnectionRegistry,
        rooms: RoomManager,
        transport: WebSocketTransport,
        presence: PresenceNotifier,
        router: MessageRouter,
        conversations: ConversationStore,
        limiter: WebSocketRateLimiter | None = None,
    ) -> None:
        self.verifier = verifier
        self.registry = registry
        self.rooms = rooms
        self.transport = transport
        self.presence = presence
        self.router = router
        self.conversations = conversations
        self.limiter = limiter
        self._handlers: dict[str, Handler] = {
            "joinConversation": self._on_join_conversation,
            "leaveConversation": self._on_leave_conversation,
            "sendMessage": self._on_send_message,
            "typing": self._on_typing,
            "getOnlineUsers": self._on_get_online_users,
            "ping": self._on_ping,
        }

    @classmethod
    def create(
        cls,
        verifier: TokenVerifier,
        conversations: ConversationStore,
        messages: MessageStore,
        users: UserDirectory,
        *,
        max_length: int = 2000,
        rate_limit_interval: float = 0.0,
    ) -> ChatGateway:
        """按依赖顺序组装注册表、房间、传输、在线状态与路由。"""
        registry = ConnectionRegistry()
        rooms = RoomManager(registry)
        transport = WebSocketTransport(registry, rooms)
        presence = PresenceNotifier(registry, transport)
        router = MessageRouter(
            registry, rooms, transport, conversations, messages, users, max_length=max_length,
        )
        limiter = WebSocketRateLimiter(rate_limit_interval) if rate_limit_interval > 0 else None
        return cls(
            verifier=verifier,
            registry=registry,
            rooms=rooms,
            transport=transport,
            presence=presence,
            router=router,
            conversations=conversations,
            limiter=limiter,
        )

    async def dispose(self) -> None:
        """关闭所有连接并清空内存状态。"""
        for connection in self.registry.all_connections():
            try:
                await connection.websocket.close(code=1001)
            except Exception as e:
                logger.debug("关闭连接失败 | conn=%s | %s", connection.connection_id, e)
            self.rooms.drop_connection(connection.connection_id)
        self.registry.dispose()
        self.presence.reset()
        logger.info("聊天网关已销毁")

    # ── 连接生命周期 ──────────────────────────────────────────────────

    async def connect(self, websocket: Any, token: str | None) -> Connection | None:
        """接受连接并完成认证与默认房间加入。认证失败返回 ``None``（连接已关闭）。"""
        await websocket.accept()
        try:
            principal = self.verifier.verify(token)
        except AuthenticationError as e:
            logger.warning("WebSocket 认证失败: %s", e.message)
            await self._reject(websocket, e)
            return None

        connection_id = uuid.uuid4().hex
        connection = self.registry.register(connection_id, principal, websocket)
        self._join_default_rooms(connection_id, principal)
        logger.info(
            "用户连接 | conn=%s | user=%s | roles=%s | 在线连接: %d",
            connection_id, principal.id, sorted(r.value for r in principal.roles), len(self.registry),
        )

        await self.transport.emit_to_connection(
            connection_id,
            "connected",
            ConnectedData(client_id=connection_id, user_id=principal.id).dump(),
        )
        await self.presence.on_connect(principal.id)
        await self.transport.emit_to_connection(
            connection_id, "onlineUsers", self.presence.online_user_ids(),
        )
        return connection

    async def disconnect(self, connection_id: str) -> Principal | None:
        """清理连接。先同步拆除成员关系与注册项，再判断是否广播下线。"""
        self.rooms.drop_connection(connection_id)
        principal = self.registry.unregister(connection_id)
        if principal is None:
            return None
        logger.info(
            "用户断开 | conn=%s | user=%s | 在线连接: %d",
            connection_id, principal.id, len(self.registry),
        )
        if self.limiter is not None:
            self.limiter.remove_client(connection_id)
        await self.presence.on_disconnect(principal.id)
        return principal

    async def _reject(self, websocket: Any, error: AuthenticationError) -> None:
        try:
            await websocket.send_json({
                "event": "error",
                "data": ErrorData(message="Authentication failed", error=error.message).model_dump(),
            })
            await websocket.close(code=WS_CLOSE_UNAUTHORIZED, reason=error.message)
        except Exception as e:
            logger.debug("认证失败后关闭连接异常: %s", e)

    def _join_default_rooms(self, connection_id: str, principal: Principal) -> None:
        self.rooms.join(connection_id, user_room(principal.id))
        if principal.is_superuser:
            roles = broadcast_roles()
        else:
            roles = [role for role in principal.roles if has_broadcast_room(role)]
        for role in roles:
            room = role_room(role)
            self.rooms.join(connection_id, room)
            self.rooms.ensure_privileged_membership(room)

    # ── 事件分发（错误边界）──────────────────────────────────────────

    async def handle_event(self, connection_id: str, raw: Any) -> dict[str, Any] | None:
        """处理一条客户端事件并返回回执（同时已发送给该连接）。

        连接已不在注册表中时返回 ``None``。
        """
        connection = self.registry.get(connection_id)
        if connection is None:
            return None
        self.registry.touch(connection_id)

        ref: str | int | None = None
        event_name = ""
        if isinstance(raw, dict):
            # 信封校验失败时仍尽量带回 ref / event
            if isinstance(raw.get("ref"), (str, int)):
                ref = raw["ref"]
            event_name = str(raw.get("event", ""))
        try:
            envelope = ClientEnvelope.model_validate(raw)
            event_name, ref = envelope.event, envelope.ref
            handler = self._handlers.get(envelope.event)
            if handler is None:
                raise InvalidMessageError(f"Unknown event: {envelope.event}")
            data = await handler(connection, envelope.data)
            ack = AckData(ref=ref, event=event_name, success=True, data=data)
        except ValidationError as e:
            logger.info("事件载荷不合法 | conn=%s | event=%s | %s", connection_id, event_name, e)
            ack = AckData(ref=ref, event=event_name, success=False, error="Invalid payload")
        except ChatError as e:
            logger.info("事件处理失败 | conn=%s | event=%s | %s", connection_id, event_name, e.message)
            ack = AckData(ref=ref, event=event_name, success=False, error=e.message)
        except Exception as e:
            logger.error(
                "事件处理异常 | conn=%s | event=%s | %s", connection_id, event_name, e, exc_info=True,
            )
            ack = AckData(ref=ref, event=event_name, success=False, error="Internal server error")

        result = ack.model_dump(mode="json", by_alias=True)
        await self.transport.emit_to_connection(connection_id, "ack", result)
        return result

    async def _accessible_conversation(self, connection: Connection, conversation_id: int) -> ConversationRecord:
        conversation = await self.conversations.get(conversation_id)
        principal = connection.principal
        if conversation is None or not (
            principal.is_superuser or principal.id in (conversation.get("participant_ids") or ())
        ):
            raise NotFoundError("Conversation not found or access denied")
        return conversation

    async def _on_join_conversation(self, connection: Connection, data: dict[str, Any]) -> dict:
        payload = JoinConversationPayload.model_validate(data)
        conversation = await self._accessible_conversation(connection, payload.conversation_id)

        # 房间类型以存储中的会话为准，与 MessageRouter 广播的房间保持一致
        is_group = bool(conversation.get("is_group", payload.is_group))
        room = thread_room(payload.conversation_id, is_group)
        self.rooms.enter_thread(connection.connection_id, room)
        self.rooms.ensure_privileged_membership(room)
        logger.debug("加入会话 | conn=%s | room=%s", connection.connection_id, room)
        return {"room": room}

    async def _on_leave_conversation(self, connection: Connection, data: dict[str, Any]) -> dict:
        payload = JoinConversationPayload.model_validate(data)
        conversation = await self.conversations.get(payload.conversation_id)
        is_group = payload.is_group if conversation is None else bool(
            conversation.get("is_group", payload.is_group)
        )
        room = thread_room(payload.conversation_id, is_group)
        if not self.rooms.exit_thread(connection.connection_id, room):
            # 不是当前线程：只撤销普通成员关系，超级用户的自动成员关系保留
            if not connection.principal.is_superuser:
                self.rooms.leave(connection.connection_id, room)
        logger.debug("离开会话 | conn=%s | room=%s", connection.connection_id, room)
        return {"room": room}

    async def _on_send_message(self, connection: Connection, data: dict[str, Any]) -> dict:
        if self.limiter is not None and not self.limiter.is_allowed(connection.connection_id):
            raise InvalidMessageError("You are sending messages too fast")
        payload = SendMessagePayload.model_validate(data)
        result = await self.router.dispatch(connection.principal, payload)
        return result.dump()

    async def _on_typing(self, connection: Connection, data: dict[str, Any]) -> dict:
        payload = TypingPayload.model_validate(data)
        room = self.rooms.current_thread(connection.connection_id)
        if room is None:
            raise InvalidMessageError("Join a conversation before sending typing events")
        typing = TypingData(
            user_id=connection.principal.id,
            username=connection.principal.display_name,
            is_typing=payload.is_typing,
            is_group=payload.is_group,
        )
        await self.transport.emit_to_room(
            room, "typing", typing.dump(), exclude=[connection.connection_id],
        )
        return {"room": room}

    async def _on_get_online_users(self, connection: Connection, data: dict[str, Any]) -> list[int]:
        return self.presence.online_user_ids()

    async def _on_ping(self, connection: Connection, data: dict[str, Any]) -> str:
        return "pong"
