"""
app.services.message_router
~~~~~~~~~~~~~~~~~~~~~~~~~~~

消息扇出路由 —— 处理一条 ``sendMessage`` 事件的完整流程。

每条消息依次经过::

    Validate → ResolveRoom → Persist → Broadcast → BroadcastPrivilegedCopies

任何一步失败都抛出 ``ChatError`` 并终止后续步骤；持久化成功之前不会发出
任何 ``newMessage``，避免客户端看到一条刷新后查不到的消息。
"""
from __future__ import annotations

from dataclasses import dataclass, field

from app.core.exceptions import InvalidMessageError, NotFoundError
from app.core.logging import get_logger
from app.core.roles import Role
from app.core.security import Principal
from app.schemas.chat import NewMessageData, SendMessagePayload, SendResult
from app.services.connection_registry import Connection, ConnectionRegistry
from app.services.ports import (
    ConversationRecord,
    ConversationStore,
    MessageRecord,
    MessageStore,
    UserDirectory,
)
from app.services.room_manager import (
    ROLE_PREFIX,
    USER_PREFIX,
    RoomManager,
    group_room,
    role_room,
    thread_room,
    user_room,
)
from app.services.transport import WebSocketTransport

logger = get_logger(__name__)

NEW_MESSAGE_EVENT = "newMessage"


def parse_id(value: object) -> int | None:
    """把客户端传来的 ID 解析为正整数；无法解析时返回 ``None``。"""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        parsed = int(value.strip())
        return parsed if parsed > 0 else None
    return None


def parse_role_target(value: object) -> Role | None:
    """解析角色广播目标，接受 ``"VOLUNTARIO"`` 与 ``"role:VOLUNTARIO"``。"""
    if not isinstance(value, str):
        return None
    raw = value.strip()
    if raw.lower().startswith(ROLE_PREFIX):
        raw = raw[len(ROLE_PREFIX):]
    return Role.parse(raw)


@dataclass(slots=True)
class _Target:
    content: str
    is_group: bool
    user_id: int | None = None
    conversation_id: int | None = None
    role: Role | None = None


@dataclass(slots=True)
class _Route:
    conversation: ConversationRecord
    is_group: bool
    rooms: list[str] = field(default_factory=list)

    @property
    def conversation_id(self) -> int:
        return self.conversation["id"]

    @property
    def participant_ids(self) -> set[int]:
        return set(self.conversation.get("participant_ids") or ())


class MessageRouter:
    """消息扇出路由器。

    Attributes:
        registry: 连接注册表。
        rooms: 房间成员管理器。
        transport: 事件分发器。
        conversations: 会话存储。
        messages: 消息存储。
        users: 用户目录（角色广播时查询角色成员）。
        max_length: 单条消息最大字符数。
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        rooms: RoomManager,
        transport: WebSocketTransport,
        conversations: ConversationStore,
        messages: MessageStore,
        users: UserDirectory,
        max_length: int = 2000,
    ) -> None:
        self.registry = registry
        self.rooms = rooms
        self.transport = transport
        self.conversations = conversations
        self.messages = messages
        self.users = users
        self.max_length = max_length

    async def dispatch(self, principal: Principal, payload: SendMessagePayload) -> SendResult:
        """处理一条消息并完成扇出。

        Raises:
            InvalidMessageError: 内容为空 / 过长，或目标无法解析。
            NotFoundError: 群组会话不存在或发送者不是参与者。
            PersistenceError: 消息存储失败（此时不广播）。
        """
        target = self._validate(principal, payload)
        route = await self._resolve_room(principal, target)
        stored = await self.messages.persist(route.conversation_id, principal.id, target.content)

        message = self._to_message(stored, route.is_group)
        delivered = await self._broadcast(route, principal, message)
        copies = await self._broadcast_privileged_copies(route, principal, message, delivered)
        logger.info(
            "消息已投递 | msg=%s | conv=%s | sender=%s | 连接: %d | 超管副本: %d",
            message.id, route.conversation_id, principal.id, len(delivered), copies,
        )
        return SendResult(success=True, message=message.model_copy(update={"is_own": True}))

    # ── Validate ──────────────────────────────────────────────────────

    def _validate(self, principal: Principal, payload: SendMessagePayload) -> _Target:
        content = payload.message or ""
        if not content.strip():
            raise InvalidMessageError("Message content is empty")
        if len(content) > self.max_length:
            raise InvalidMessageError(
                f"Message exceeds {self.max_length} characters",
            )
        if payload.sender_id is not None and payload.sender_id != principal.id:
            raise InvalidMessageError("Sender ID does not match authenticated user")
        if payload.to is None or payload.to == "":
            raise InvalidMessageError("Message target is required")

        if not payload.is_group:
            user_id = parse_id(payload.to)
            if user_id is None:
                raise InvalidMessageError("Target user id must be an integer")
            if user_id == principal.id:
                raise InvalidMessageError("Cannot send a message to yourself")
            return _Target(content=content, is_group=False, user_id=user_id)

        conversation_id = parse_id(payload.to)
        if conversation_id is not None:
            return _Target(content=content, is_group=True, conversation_id=conversation_id)
        role = parse_role_target(payload.to)
        if role is not None:
            return _Target(content=content, is_group=True, role=role)
        raise InvalidMessageError("Group id must be an integer or a role name")

    # ── ResolveRoom ───────────────────────────────────────────────────

    async def _resolve_room(self, principal: Principal, target: _Target) -> _Route:
        if target.user_id is not None:
            conversation = await self.conversations.find_or_create_direct(
                principal.id, target.user_id,
            )
            route = _Route(
                conversation=conversation,
                is_group=False,
                rooms=[thread_room(conversation["id"], False), user_room(target.user_id)],
            )
        elif target.role is not None:
            member_ids = await self.users.list_user_ids_by_role(target.role)
            participants = sorted(set(member_ids) | {principal.id})
            conversation = await self.conversations.find_or_create_role_group(
                target.role, participants, created_by=principal.id,
            )
            route = _Route(
                conversation=conversation,
                is_group=True,
                rooms=[group_room(conversation["id"]), role_room(target.role)],
            )
        else:
            assert target.conversation_id is not None
            conversation = await self.conversations.get(target.conversation_id)
            if conversation is None or not (
                principal.is_superuser
                or principal.id in (conversation.get("participant_ids") or ())
            ):
                raise NotFoundError("Conversation not found or access denied")
            is_group = bool(conversation.get("is_group", True))
            route = _Route(
                conversation=conversation,
                is_group=is_group,
                rooms=[thread_room(conversation["id"], is_group)],
            )

        # 覆盖在房间创建之后才上线的超级用户
        for room in route.rooms:
            if not room.startswith(USER_PREFIX):
                self.rooms.ensure_privileged_membership(room)
        return route

    # ── Broadcast ─────────────────────────────────────────────────────

    def _observer_ids(self, route: _Route, sender_id: int) -> set[str]:
        """应收到超管副本的连接：超级用户，且既不是发送者也不是会话参与者。"""
        participants = route.participant_ids
        # 参与者或发送者身份的超级用户只收普通投递，不带 isSuperuserCopy，同一条消息不会收到两次
        return {
            conn.connection_id
            for conn in self.registry.superuser_connections()
            if conn.principal.id != sender_id and conn.principal.id not in participants
        }

    async def _broadcast(
        self, route: _Route, principal: Principal, message: NewMessageData,
    ) -> set[str]:
        """发给目标房间与发送者自己的收件箱，``isOwn`` 按接收方计算。"""
        targets: set[str] = set()
        for room in [*route.rooms, user_room(principal.id)]:
            targets |= self.rooms.members_of(room)
        targets -= self._observer_ids(route, principal.id)

        def payload_for(connection: Connection) -> dict:
            is_own = connection.principal.id == principal.id
            return message.model_copy(update={"is_own": is_own}).dump()

        await self.transport.emit_to_connections(
            targets, NEW_MESSAGE_EVENT, payload_for=payload_for,
        )
        return targets

    async def _broadcast_privileged_copies(
        self,
        route: _Route,
        principal: Principal,
        message: NewMessageData,
        delivered: set[str],
    ) -> int:
        """给每个旁观的超级用户连接单独发一份带标记的副本，与房间成员关系无关。"""
        observers = self._observer_ids(route, principal.id) - delivered
        if not observers:
            return 0
        copy = message.model_copy(update={"is_own": False, "is_superuser_copy": True}).dump()
        return await self.transport.emit_to_connections(observers, NEW_MESSAGE_EVENT, copy)

    @staticmethod
    def _to_message(stored: MessageRecord, is_group: bool) -> NewMessageData:
        return NewMessageData(
            id=stored["id"],
            content=stored["content"],
            sender_id=stored["sender_id"],
            conversation_id=stored["conversation_id"],
            is_group=is_group,
            created_at=stored.get("created_at"),
        )
