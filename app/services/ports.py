"""
app.services.ports
~~~~~~~~~~~~~~~~~~

聊天核心依赖的外部协作方接口。

生产实现位于 ``app.db``（MongoDB），测试中用内存假实现替换。
"""
from __future__ import annotations

from datetime import datetime
from typing import Protocol, TypedDict

from app.core.roles import Role


class ConversationRecord(TypedDict, total=False):
    """``conversations`` 集合中的单个会话。"""

    id: int
    is_group: bool
    group_name: str | None
    role: str | None
    participant_ids: list[int]
    created_by: int | None
    created_at: datetime
    updated_at: datetime


class MessageRecord(TypedDict):
    """``messages`` 集合中的单条消息。"""

    id: int
    conversation_id: int
    sender_id: int
    content: str
    is_read: bool
    created_at: datetime


class ConversationStore(Protocol):
    async def find_or_create_direct(self, user_a: int, user_b: int) -> ConversationRecord: ...

    async def find_or_create_role_group(
        self, role: Role, participant_ids: list[int], created_by: int | None = None,
    ) -> ConversationRecord: ...

    async def get(self, conversation_id: int) -> ConversationRecord | None: ...


class MessageStore(Protocol):
    async def persist(self, conversation_id: int, sender_id: int, content: str) -> MessageRecord: ...


class UserDirectory(Protocol):
    async def list_user_ids_by_role(self, role: Role) -> list[int]: ...
