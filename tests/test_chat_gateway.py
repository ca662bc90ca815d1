"""
tests.test_chat_gateway
~~~~~~~~~~~~~~~~~~~~~~~

ChatGateway 单元测试 —— 连接认证、默认房间、事件分发与错误回执。
"""
from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from app.core.roles import Role
from app.core.security import create_access_token
from app.services.chat_gateway import WS_CLOSE_UNAUTHORIZED, ChatGateway


# ── 连接 ──────────────────────────────────────────────────────────────

class TestConnect:
    """测试连接建立与认证。"""

    @pytest.mark.asyncio
    async def test_invalid_token_rejected(self, gateway, make_websocket) -> None:
        ws = make_websocket()

        connection = await gateway.connect(ws, "not-a-jwt")

        assert connection is None
        assert ws.accepted is True
        assert ws.closed is True
        assert ws.close_code == WS_CLOSE_UNAUTHORIZED
        [error] = ws.events("error")
        assert error["message"] == "Authentication failed"
        assert len(gateway.registry) == 0

    @pytest.mark.asyncio
    async def test_missing_token_rejected(self, gateway, make_websocket) -> None:
        ws = make_websocket()

        assert await gateway.connect(ws, None) is None
        assert ws.events("error")[0]["error"] == "Missing auth token"

    @pytest.mark.asyncio
    async def test_expired_token_rejected(self, gateway, make_websocket) -> None:
        ws = make_websocket()
        token = create_access_token(1, [Role.ADMIN], expires_delta=timedelta(seconds=-10))

        assert await gateway.connect(ws, token) is None
        assert ws.events("error")[0]["error"] == "Token expired"

    @pytest.mark.asyncio
    async def test_bearer_prefix_accepted(self, gateway, make_websocket) -> None:
        ws = make_websocket()
        token = create_access_token(1, [Role.ADMIN])

        connection = await gateway.connect(ws, f"Bearer {token}")

        assert connection is not None
        assert connection.user_id == 1

    @pytest.mark.asyncio
    async def test_connected_event_and_snapshot(self, connect_user) -> None:
        connection, ws = await connect_user(1, Role.VOLUNTARIO)

        [connected] = ws.events("connected")
        assert connected == {"clientId": connection.connection_id, "userId": 1}
        assert ws.events("onlineUsers") == [[1]]

    @pytest.mark.asyncio
    async def test_default_rooms(self, gateway, connect_user) -> None:
        connection, _ = await connect_user(1, Role.VOLUNTARIO, Role.ADMIN)

        assert gateway.rooms.rooms_of(connection.connection_id) == {
            "user:1", "role:VOLUNTARIO", "role:ADMIN",
        }

    @pytest.mark.asyncio
    async def test_superuser_joins_every_role_room(self, gateway, connect_user) -> None:
        connection, _ = await connect_user(100, Role.SUPERUSER)

        assert gateway.rooms.rooms_of(connection.connection_id) == {
            "user:100",
            "role:SUPERUSER",
            "role:ADMIN",
            "role:PERSONAL_BOMBERIL",
            "role:VOLUNTARIO",
        }

    @pytest.mark.asyncio
    async def test_unknown_roles_dropped(self, gateway, make_websocket) -> None:
        token = create_access_token(1, ["VOLUNTARIO", "JEFE_DE_TURNO"])

        connection = await gateway.connect(make_websocket(), token)

        assert connection.principal.roles == frozenset({Role.VOLUNTARIO})
        assert gateway.rooms.rooms_of(connection.connection_id) == {"user:1", "role:VOLUNTARIO"}
        assert not connection.principal.is_superuser

    @pytest.mark.asyncio
    async def test_disconnect_clears_rooms(self, gateway, connect_user) -> None:
        connection, _ = await connect_user(1, Role.VOLUNTARIO)

        await gateway.disconnect(connection.connection_id)

        assert gateway.rooms.rooms_of(connection.connection_id) == set()
        assert gateway.rooms.members_of("role:VOLUNTARIO") == set()
        assert len(gateway.registry) == 0

    @pytest.mark.asyncio
    async def test_dispose_closes_everything(self, gateway, connect_user) -> None:
        _, ws1 = await connect_user(1, Role.VOLUNTARIO)
        _, ws2 = await connect_user(2, Role.ADMIN)

        await gateway.dispose()

        assert ws1.closed and ws2.closed
        assert ws1.close_code == 1001
        assert len(gateway.registry) == 0
        assert gateway.presence.online_user_ids() == []


# ── 事件分发 ──────────────────────────────────────────────────────────

class TestHandleEvent:
    """测试事件分发与回执。"""

    @pytest.mark.asyncio
    async def test_ping(self, gateway, connect_user) -> None:
        connection, ws = await connect_user(1, Role.VOLUNTARIO)

        ack = await gateway.handle_event(connection.connection_id, {"event": "ping", "ref": 7})

        assert ack["success"] is True
        assert ack["ref"] == 7
        assert ack["data"] == "pong"
        assert ws.events("ack")[-1] == ack

    @pytest.mark.asyncio
    async def test_unknown_event(self, gateway, connect_user) -> None:
        connection, _ = await connect_user(1, Role.VOLUNTARIO)

        ack = await gateway.handle_event(connection.connection_id, {"event": "dance", "ref": "a"})

        assert ack["success"] is False
        assert ack["error"] == "Unknown event: dance"
        assert ack["ref"] == "a"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", [None, "hola", {"data": {}}, {"event": "sendMessage", "data": []}])
    async def test_malformed_frame(self, gateway, connect_user, raw) -> None:
        connection, _ = await connect_user(1, Role.VOLUNTARIO)

        ack = await gateway.handle_event(connection.connection_id, raw)

        assert ack["success"] is False
        assert ack["error"] == "Invalid payload"

    @pytest.mark.asyncio
    async def test_unknown_connection(self, gateway) -> None:
        assert await gateway.handle_event("ghost", {"event": "ping"}) is None

    @pytest.mark.asyncio
    async def test_send_message(self, gateway, connect_user) -> None:
        connection, _ = await connect_user(1, Role.VOLUNTARIO)
        _, recipient_ws = await connect_user(2, Role.VOLUNTARIO)

        ack = await gateway.handle_event(
            connection.connection_id,
            {"event": "sendMessage", "data": {"to": 2, "message": "hola", "senderId": 1}, "ref": 1},
        )

        assert ack["success"] is True
        assert ack["data"]["success"] is True
        assert ack["data"]["message"]["isOwn"] is True
        assert recipient_ws.events("newMessage")[0]["content"] == "hola"

    @pytest.mark.asyncio
    async def test_error_does_not_break_connection(self, gateway, connect_user) -> None:
        """一次失败之后，同一连接仍可继续发送事件。"""
        connection, _ = await connect_user(1, Role.VOLUNTARIO)

        failed = await gateway.handle_event(
            connection.connection_id, {"event": "sendMessage", "data": {"to": 2, "message": ""}},
        )
        ok = await gateway.handle_event(connection.connection_id, {"event": "ping"})

        assert failed["error"] == "Message content is empty"
        assert ok["success"] is True

    @pytest.mark.asyncio
    async def test_unexpected_error_is_masked(self, gateway, connect_user) -> None:
        connection, _ = await connect_user(1, Role.VOLUNTARIO)
        gateway.router.dispatch = AsyncMock(side_effect=RuntimeError("boom"))

        ack = await gateway.handle_event(
            connection.connection_id, {"event": "sendMessage", "data": {"to": 2, "message": "hola"}},
        )

        assert ack["success"] is False
        assert ack["error"] == "Internal server error"

    @pytest.mark.asyncio
    async def test_persistence_failure_ack(self, gateway, connect_user, message_store) -> None:
        message_store.fail = True
        connection, _ = await connect_user(1, Role.VOLUNTARIO)

        ack = await gateway.handle_event(
            connection.connection_id, {"event": "sendMessage", "data": {"to": 2, "message": "hola"}},
        )

        assert ack["success"] is False
        assert ack["error"] == "Failed to store message"

    @pytest.mark.asyncio
    async def test_get_online_users(self, gateway, connect_user) -> None:
        connection, _ = await connect_user(3, Role.VOLUNTARIO)
        await connect_user(1, Role.ADMIN)

        ack = await gateway.handle_event(connection.connection_id, {"event": "getOnlineUsers"})

        assert ack["data"] == [1, 3]


# ── 会话线程 ──────────────────────────────────────────────────────────

class TestConversationThreads:
    """测试加入 / 离开会话与输入状态。"""

    @pytest.mark.asyncio
    async def test_join_requires_participation(self, gateway, connect_user, conversation_store) -> None:
        group = conversation_store.add_group([1, 2])
        outsider, _ = await connect_user(9, Role.VOLUNTARIO)

        ack = await gateway.handle_event(
            outsider.connection_id,
            {"event": "joinConversation", "data": {"conversationId": group["id"], "isGroup": True}},
        )

        assert ack["success"] is False
        assert ack["error"] == "Conversation not found or access denied"
        assert gateway.rooms.current_thread(outsider.connection_id) is None

    @pytest.mark.asyncio
    async def test_join_switches_thread(self, gateway, connect_user, conversation_store) -> None:
        first = conversation_store.add_group([1, 2])
        direct = await conversation_store.find_or_create_direct(1, 2)
        connection, _ = await connect_user(1, Role.VOLUNTARIO)

        await gateway.handle_event(
            connection.connection_id,
            {"event": "joinConversation", "data": {"conversationId": first["id"], "isGroup": True}},
        )
        # 客户端传错 isGroup 时以存储中的会话类型为准
        ack = await gateway.handle_event(
            connection.connection_id,
            {"event": "joinConversation", "data": {"conversationId": direct["id"], "isGroup": True}},
        )

        assert ack["data"] == {"room": f"conversation:{direct['id']}"}
        assert gateway.rooms.current_thread(connection.connection_id) == f"conversation:{direct['id']}"
        assert not gateway.rooms.is_member(connection.connection_id, f"group:{first['id']}")

    @pytest.mark.asyncio
    async def test_leave_conversation(self, gateway, connect_user, conversation_store) -> None:
        group = conversation_store.add_group([1, 2])
        connection, _ = await connect_user(1, Role.VOLUNTARIO)
        data = {"conversationId": group["id"], "isGroup": True}

        await gateway.handle_event(connection.connection_id, {"event": "joinConversation", "data": data})
        await gateway.handle_event(connection.connection_id, {"event": "leaveConversation", "data": data})

        assert gateway.rooms.current_thread(connection.connection_id) is None

    @pytest.mark.asyncio
    async def test_leave_uses_stored_conversation_kind(self, gateway, connect_user, conversation_store) -> None:
        """客户端离开时传错 isGroup，仍按存储中的会话类型离开线程。"""
        group = conversation_store.add_group([1, 2])
        connection, _ = await connect_user(1, Role.VOLUNTARIO)

        await gateway.handle_event(
            connection.connection_id,
            {"event": "joinConversation", "data": {"conversationId": group["id"], "isGroup": True}},
        )
        ack = await gateway.handle_event(
            connection.connection_id,
            {"event": "leaveConversation", "data": {"conversationId": group["id"], "isGroup": False}},
        )

        assert ack["data"] == {"room": f"group:{group['id']}"}
        assert gateway.rooms.current_thread(connection.connection_id) is None
        assert not gateway.rooms.is_member(connection.connection_id, f"group:{group['id']}")

    @pytest.mark.asyncio
    async def test_superuser_typing_stays_in_joined_thread(
        self, gateway, connect_user, conversation_store,
    ) -> None:
        """超级用户被自动拉入多个线程后，输入状态只发往自己打开的那个。"""
        joined = conversation_store.add_group([3, 4])
        others = [conversation_store.add_group([1, 2]) for _ in range(5)]
        admin, _ = await connect_user(50, Role.SUPERUSER)
        member, member_ws = await connect_user(3, Role.VOLUNTARIO)
        bystander, bystander_ws = await connect_user(1, Role.VOLUNTARIO)

        for conn in (admin, member):
            await gateway.handle_event(
                conn.connection_id,
                {"event": "joinConversation", "data": {"conversationId": joined["id"], "isGroup": True}},
            )
        for other in others:
            await gateway.handle_event(
                bystander.connection_id,
                {"event": "joinConversation", "data": {"conversationId": other["id"], "isGroup": True}},
            )

        ack = await gateway.handle_event(
            admin.connection_id, {"event": "typing", "data": {"isTyping": True, "isGroup": True}},
        )

        assert ack["data"] == {"room": f"group:{joined['id']}"}
        assert len(member_ws.events("typing")) == 1
        assert bystander_ws.events("typing") == []
        # 自动成员关系不受切换影响
        for other in others:
            assert gateway.rooms.is_member(admin.connection_id, f"group:{other['id']}")

    @pytest.mark.asyncio
    async def test_superuser_switch_keeps_auto_memberships(
        self, gateway, connect_user, conversation_store,
    ) -> None:
        first = conversation_store.add_group([1, 2])
        second = conversation_store.add_group([1, 2])
        admin, _ = await connect_user(50, Role.SUPERUSER)
        volunteer, _ = await connect_user(1, Role.VOLUNTARIO)

        await gateway.handle_event(
            volunteer.connection_id,
            {"event": "joinConversation", "data": {"conversationId": first["id"], "isGroup": True}},
        )
        await gateway.handle_event(
            admin.connection_id,
            {"event": "joinConversation", "data": {"conversationId": second["id"], "isGroup": True}},
        )

        assert gateway.rooms.current_thread(admin.connection_id) == f"group:{second['id']}"
        assert gateway.rooms.is_member(admin.connection_id, f"group:{first['id']}")

    @pytest.mark.asyncio
    async def test_typing_relayed_to_thread(self, gateway, connect_user, conversation_store) -> None:
        group = conversation_store.add_group([1, 2])
        typist, typist_ws = await connect_user(1, Role.VOLUNTARIO, username="ana")
        member, member_ws = await connect_user(2, Role.VOLUNTARIO)
        data = {"conversationId": group["id"], "isGroup": True}
        for conn in (typist, member):
            await gateway.handle_event(conn.connection_id, {"event": "joinConversation", "data": data})

        ack = await gateway.handle_event(
            typist.connection_id, {"event": "typing", "data": {"isTyping": True, "isGroup": True}},
        )

        assert ack["success"] is True
        assert member_ws.events("typing") == [
            {"userId": 1, "username": "ana", "isTyping": True, "isGroup": True},
        ]
        assert typist_ws.events("typing") == []

    @pytest.mark.asyncio
    async def test_typing_without_thread(self, gateway, connect_user) -> None:
        connection, _ = await connect_user(1, Role.VOLUNTARIO)

        ack = await gateway.handle_event(connection.connection_id, {"event": "typing", "data": {}})

        assert ack["error"] == "Join a conversation before sending typing events"


# ── 限流 ──────────────────────────────────────────────────────────────

class TestRateLimit:
    """测试 sendMessage 限流。"""

    @pytest.mark.asyncio
    async def test_fast_sender_throttled(
        self, verifier, conversation_store, message_store, user_directory, make_websocket,
    ) -> None:
        gateway = ChatGateway.create(
            verifier, conversation_store, message_store, user_directory, rate_limit_interval=60,
        )
        connection = await gateway.connect(make_websocket(), create_access_token(1, [Role.VOLUNTARIO]))
        frame = {"event": "sendMessage", "data": {"to": 2, "message": "hola"}}

        first = await gateway.handle_event(connection.connection_id, frame)
        second = await gateway.handle_event(connection.connection_id, frame)

        assert first["success"] is True
        assert second["error"] == "You are sending messages too fast"
        assert len(message_store.messages) == 1
