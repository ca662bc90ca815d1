"""
app.core.exceptions
~~~~~~~~~~~~~~~~~~~

聊天子系统的业务异常。

WebSocket 侧由 ``ChatGateway`` 统一转换为 ``{success: false, error}``，
REST 侧由 ``app.main`` 中的异常处理器转换为 ``ApiResponse.fail()``。
"""
from __future__ import annotations


class ChatError(Exception):
    """所有聊天业务异常的基类。

    Attributes:
        message: 返回给客户端的错误描述。
        code: 对应的 HTTP 状态码（REST 接口使用）。
    """

    code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthenticationError(ChatError):
    """token 缺失、无效或已过期。"""

    code = 401


class InvalidMessageError(ChatError):
    """消息内容为空、过长，或目标 ID 无法解析。"""

    code = 400


class NotFoundError(ChatError):
    """会话 / 群组不存在，或当前用户不是参与者。"""

    code = 404


class PersistenceError(ChatError):
    """外部存储写入失败。客户端负责重试。"""

    code = 503
