"""
app.api.chat_ws
~~~~~~~~~~~~~~~

WebSocket 实时聊天接口。

提供 ``/ws/chat?token=<jwt>`` 端点（也接受 ``Authorization: Bearer`` 头）。
连接的认证、房间、在线状态与消息扇出都由 ``ChatGateway`` 完成，
这里只负责接收循环和断开清理。

消息协议（JSON 文本帧）:
  - 客户端 → 服务端：``{"event": "sendMessage", "data": {...}, "ref": 1}``
  - 服务端 → 客户端：``{"event": "newMessage", "data": {...}}``
  - 每个客户端事件都会收到 ``ack`` 回执：``{"event": "ack", "data": {"ref": 1, "success": true, ...}}``
"""
from __future__ import annotations

import json
import uuid

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from app.core.logging import get_logger, request_id_ctx_var
from app.services.chat_gateway import ChatGateway

logger = get_logger(__name__)

router: APIRouter = APIRouter()


@router.websocket("/ws/chat")
async def chat_websocket_endpoint(websocket: WebSocket, token: str | None = None) -> None:
    """WebSocket 聊天端点。

    Args:
        websocket: FastAPI WebSocket 连接对象。
        token: 查询参数中的 JWT；缺省时读取 ``Authorization`` 头。
    """
    ws_req_id = f"ws-{uuid.uuid4().hex[:8]}"
    ctx_token = request_id_ctx_var.set(ws_req_id)

    try:
        gateway: ChatGateway = websocket.app.state.chat_gateway
        raw_token = token or websocket.headers.get("authorization")
        connection = await gateway.connect(websocket, raw_token)
        if connection is None:
            return

        try:
            while True:
                text: str = await websocket.receive_text()
                try:
                    frame = json.loads(text)
                except ValueError:
                    # 非 JSON 帧按空事件处理，由网关回执错误
                    frame = None
                await gateway.handle_event(connection.connection_id, frame)
        except WebSocketDisconnect:
            pass  # 正常断开
        except Exception as e:
            logger.error("WebSocket 接收异常: %s | conn=%s", e, connection.connection_id, exc_info=True)
        finally:
            await gateway.disconnect(connection.connection_id)

    finally:
        request_id_ctx_var.reset(ctx_token)
