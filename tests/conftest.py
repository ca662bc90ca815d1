"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures —— 用内存假实现替换 MongoDB 与真实 WebSocket，
使单元测试可在无数据库、无网络环境下快速运行。
"""
from __future__ import annotations

import os
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

import pytest

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("ENVIRONMENT", "test")  # 激活 .env.test 配置

from app.core.exceptions import PersistenceError  # noqa: E402
from app.core.roles import Role, role_label  # noqa: E402
from app.core.security import TokenVerifier, create_access_token  # noqa: E402
from app.services.chat_gateway import ChatGateway  # noqa: E402
from app.services.connection_registry import Connection  # noqa: E402
from app.services.ports import ConversationRecord, MessageRecord  # noqa: E402


# ── WebSocket Mock ────────────────────────────────────────────────────

class FakeWebSocket:
    """记录所有发出的 JSON 帧，模拟 ``starlette.websockets.WebSocket``。"""

    def __init__(self, fail_on_send: bool = False) -> None:
        self.sent: list[dict[str, Any]] = []
        self.accepted = False
        self.closed = False
        self.close_code: int | None = None
        self.close_reason: str | None = None
        self.fail_on_send = fail_on_send
        self.headers: dict[str, str] = {}

    async def accept(self) -> None:
        self.accepted = True

    async def send_json(self, data: Any) -> None:
        if self.fail_on_send:
            raise RuntimeError("socket is closed")
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.closed = True
        self.close_code = code
        self.close_reason = reason

    def events(self, name: str) -> list[Any]:
        """按事件名取出已发送的 ``data``。"""
        return [frame["data"] for frame in self.sent if frame["event"] == name]

    def clear(self) -> None:
        self.sent.clear()


# ── 存储 Mock ─────────────────────────────────────────────────────────

class InMemoryConversationStore:
    """``ConversationStore`` 的内存实现。"""

    def __init__(self) -> None:
        self.conversations: dict[int, ConversationRecord] = {}
        self._next_id = 1

    def _insert(self, **fields: Any) -> ConversationRecord:
        now = datetime.now(timezone.utc)
        record: ConversationRecord = {
            "id": self._next_id,
            "created_at": now,
            "updated_at": now,
            **fields,
        }  # type: ignore[typeddict-item]
        self.conversations[self._next_id] = record
        self._next_id += 1
        return record

    def add_group(self, participant_ids: list[int], group_name: str = "Guardia") -> ConversationRecord:
        """直接插入一个普通群组（测试数据准备）。"""
        return self._insert(
            is_group=True,
            group_name=group_name,
            role=None,
            participant_ids=sorted(participant_ids),
            created_by=participant_ids[0],
        )

    async def find_or_create_direct(self, user_a: int, user_b: int) -> ConversationRecord:
        pair = sorted((user_a, user_b))
        for record in self.conversations.values():
            if not record["is_group"] and record["participant_ids"] == pair:
                return record
        return self._insert(
            is_group=False, group_name=None, role=None, participant_ids=pair, created_by=user_a,
        )

    async def find_or_create_role_group(
        self, role: Role, participant_ids: list[int], created_by: int | None = None,
    ) -> ConversationRecord:
        for record in self.conversations.values():
            if record.get("role") == role.value:
                record["participant_ids"] = sorted(set(record["participant_ids"]) | set(participant_ids))
                return record
        return self._insert(
            is_group=True,
            group_name=role_label(role),
            role=role.value,
            participant_ids=sorted(set(participant_ids)),
            created_by=created_by,
        )

    async def get(self, conversation_id: int) -> ConversationRecord | None:
        return self.conversations.get(conversation_id)


class InMemoryMessageStore:
    """``MessageStore`` 的内存实现，``fail=True`` 时模拟数据库故障。"""

    def __init__(self) -> None:
        self.messages: list[MessageRecord] = []
        self.fail = False

    async def persist(self, conversation_id: int, sender_id: int, content: str) -> MessageRecord:
        if self.fail:
            raise PersistenceError("Failed to store message")
        record: MessageRecord = {
            "id": len(self.messages) + 1,
            "conversation_id": conversation_id,
            "sender_id": sender_id,
            "content": content,
            "is_read": False,
            "created_at": datetime.now(timezone.utc),
        }
        self.messages.append(record)
        return record


class InMemoryUserDirectory:
    """``UserDirectory`` 的内存实现。"""

    def __init__(self) -> None:
        self.by_role: dict[Role, list[int]] = {}

    async def list_user_ids_by_role(self, role: Role) -> list[int]:
        return list(self.by_role.get(role, []))


# ── Fixtures ──────────────────────────────────────────────────────────

@pytest.fixture()
def conversation_store() -> InMemoryConversationStore:
    return InMemoryConversationStore()


@pytest.fixture()
def message_store() -> InMemoryMessageStore:
    return InMemoryMessageStore()


@pytest.fixture()
def user_directory() -> InMemoryUserDirectory:
    return InMemoryUserDirectory()


@pytest.fixture()
def verifier() -> TokenVerifier:
    return TokenVerifier.from_settings()


@pytest.fixture()
def gateway(
    verifier: TokenVerifier,
    conversation_store: InMemoryConversationStore,
    message_store: InMemoryMessageStore,
    user_directory: InMemoryUserDirectory,
) -> ChatGateway:
    """不限流的聊天网关，方便连续发送。"""
    return ChatGateway.create(
        verifier,
        conversation_store,
        message_store,
        user_directory,
        max_length=2000,
        rate_limit_interval=0,
    )


ConnectUser = Callable[..., Awaitable[tuple[Connection, FakeWebSocket]]]


@pytest.fixture()
def connect_user(gateway: ChatGateway) -> ConnectUser:
    """返回一个协程函数：以指定身份建立一条假连接。"""

    async def _connect(user_id: int, *roles: Role, username: str = "") -> tuple[Connection, FakeWebSocket]:
        ws = FakeWebSocket()
        token = create_access_token(user_id, roles, username=username or f"user{user_id}")
        connection = await gateway.connect(ws, token)
        assert connection is not None
        return connection, ws

    return _connect


@pytest.fixture()
def make_websocket() -> Callable[..., FakeWebSocket]:
    return FakeWebSocket
