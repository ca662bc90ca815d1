"""
app.schemas.chat
~~~~~~~~~~~~~~~~

聊天相关的 Pydantic 模型 —— WebSocket 事件载荷与 REST 请求/响应。

线上字段统一使用 camelCase（与管理后台前端保持一致），
Python 侧通过 ``populate_by_name`` 仍可用 snake_case 构造。
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

PresenceStatus = Literal["online", "offline"]


class CamelModel(BaseModel):
    """camelCase 序列化的基类。"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def dump(self) -> dict[str, Any]:
        """按线上格式导出（camelCase，去掉 None）。"""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ── 客户端 → 服务端 ──────────────────────────────────────────────────

class ClientEnvelope(BaseModel):
    """客户端发送的事件信封：``{"event": ..., "data": {...}, "ref": ...}``。"""

    event: str = Field(..., min_length=1, description="事件名")
    data: dict[str, Any] = Field(default_factory=dict, description="事件载荷")
    ref: str | int | None = Field(default=None, description="客户端请求标识，回执原样带回")


class JoinConversationPayload(CamelModel):
    """``joinConversation`` / ``leaveConversation`` 载荷。"""

    conversation_id: int = Field(..., description="会话 ID")
    is_group: bool = Field(default=False, description="是否群组会话")


class SendMessagePayload(CamelModel):
    """``sendMessage`` 载荷。

    ``to`` 的含义取决于 ``is_group``：私聊时为对方用户 ID；群聊时为
    群组会话 ID，或角色名（``"VOLUNTARIO"`` / ``"role:VOLUNTARIO"``）表示角色广播。
    """

    to: int | str | None = Field(default=None, description="目标用户 / 群组 / 角色")
    message: str = Field(default="", description="消息文本")
    sender_id: int | None = Field(default=None, description="发送者 ID（须与 token 一致）")
    is_group: bool = Field(default=False, description="是否群聊")


class TypingPayload(CamelModel):
    """``typing`` 载荷。"""

    is_typing: bool = Field(default=True, description="是否正在输入")
    is_group: bool = Field(default=False, description="是否群聊")


# ── 服务端 → 客户端 ──────────────────────────────────────────────────

class ConnectedData(CamelModel):
    client_id: str
    user_id: int


class UserStatusData(CamelModel):
    user_id: int
    status: PresenceStatus


class NewMessageData(CamelModel):
    """``newMessage`` 载荷。``is_own`` 按接收方逐个计算，不落库。"""

    id: int
    content: str
    sender_id: int
    conversation_id: int
    is_group: bool = False
    is_own: bool = False
    is_superuser_copy: bool | None = None
    created_at: datetime | None = None


class TypingData(CamelModel):
    user_id: int
    username: str
    is_typing: bool
    is_group: bool


class ErrorData(BaseModel):
    """连接级错误（认证失败后随即断开）。"""

    message: str
    error: str


class AckData(CamelModel):
    """对带 ``ref`` 的客户端事件的回执。"""

    ref: str | int | None = None
    event: str
    success: bool
    error: str | None = None
    data: Any = None


class SendResult(CamelModel):
    """``MessageRouter.dispatch`` 的结果。"""

    success: bool
    error: str | None = None
    message: NewMessageData | None = None


# ── REST ──────────────────────────────────────────────────────────────

class ConversationData(CamelModel):
    """会话摘要。"""

    id: int = Field(..., description="会话 ID")
    is_group: bool = Field(default=False, description="是否群组")
    group_name: str | None = Field(default=None, description="群组名称")
    role: str | None = Field(default=None, description="角色广播群对应的角色")
    participant_ids: list[int] = Field(default_factory=list, description="参与者 ID")
    created_by: int | None = Field(default=None, description="创建者 ID")
    created_at: datetime | None = Field(default=None, description="创建时间")
    updated_at: datetime | None = Field(default=None, description="最近更新时间")


class MessageData(CamelModel):
    """单条历史消息。"""

    id: int
    content: str
    sender_id: int
    conversation_id: int
    is_read: bool = False
    created_at: datetime | None = None


class MessagesPageData(CamelModel):
    conversation_id: int
    messages: list[MessageData]
    total: int = Field(..., description="本会话消息总数")


class WithUserRequest(CamelModel):
    user_id: int | None = Field(default=None, description="对方用户 ID")


class CreateGroupRequest(CamelModel):
    participant_ids: list[int] = Field(..., min_length=1, description="其他参与者 ID")
    group_name: str | None = Field(default=None, max_length=120, description="群组名称")


class UnreadCountData(CamelModel):
    conversation_id: int
    count: int


class AvailableUserData(CamelModel):
    id: int
    username: str
