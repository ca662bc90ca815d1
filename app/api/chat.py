"""
app.api.chat
~~~~~~~~~~~~

聊天 REST 接口 —— 会话管理 + 历史回看 + 已读 / 未读。

路由前缀 ``/api/chat``，所有接口都需要 ``Authorization: Bearer <jwt>``。

端点:
  - ``GET  /chat/online-users``                        → 当前在线用户 ID
  - ``GET  /chat/conversations``                       → 我参与的会话
  - ``GET  /chat/conversations/{id}``                  → 会话详情
  - ``GET  /chat/conversations/{id}/messages``         → 历史消息（分页）
  - ``POST /chat/conversations/with-user``             → 获取 / 创建私聊
  - ``POST /chat/conversations/group``                 → 获取 / 创建群组
  - ``POST /chat/conversations/{id}/mark-read``        → 标记已读
  - ``GET  /chat/unread``                              → 各会话未读数
  - ``GET  /chat/users/available``                     → 可发起聊天的用户
"""
from fastapi import APIRouter, Depends, Query, Request

from app.api.deps import (
    get_chat_gateway,
    get_conversation_repo,
    get_current_principal,
    get_message_repo,
    get_user_repo,
)
from app.core.exceptions import InvalidMessageError, NotFoundError
from app.core.rate_limit import limiter
from app.core.security import Principal
from app.core.settings import settings
from app.db.conversation_repository import ConversationRepository
from app.db.message_repository import MessageRepository
from app.db.user_repository import UserRepository
from app.schemas.api_response import ApiResponse
from app.schemas.chat import (
    AvailableUserData,
    ConversationData,
    CreateGroupRequest,
    MessageData,
    MessagesPageData,
    UnreadCountData,
    WithUserRequest,
)
from app.services.chat_gateway import ChatGateway
from app.services.ports import ConversationRecord

router: APIRouter = APIRouter()


async def _get_accessible(
    repo: ConversationRepository, conversation_id: int, principal: Principal,
) -> ConversationRecord:
    """获取会话并校验访问权限（参与者或超级用户）。"""
    conversation = await repo.get(conversation_id)
    if conversation is None or not (
        principal.is_superuser or principal.id in (conversation.get("participant_ids") or ())
    ):
        raise NotFoundError("Conversation not found or access denied")
    return conversation


# ── 在线状态 ──────────────────────────────────────────────────────────

@router.get("/chat/online-users", summary="当前在线用户", response_model=ApiResponse[list[int]])
@limiter.limit("10/second")
async def online_users(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    gateway: ChatGateway = Depends(get_chat_gateway),
):
    return ApiResponse.ok(data=gateway.presence.online_user_ids())


# ── 会话 ──────────────────────────────────────────────────────────────

@router.get(
    "/chat/conversations",
    summary="我参与的会话",
    response_model=ApiResponse[list[ConversationData]],
)
@limiter.limit("10/second")
async def list_conversations(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    repo: ConversationRepository = Depends(get_conversation_repo),
):
    """按最近更新时间倒序返回当前用户参与的所有会话。"""
    records = await repo.list_for_user(principal.id)
    return ApiResponse.ok(data=[ConversationData.model_validate(r) for r in records])


@router.get(
    "/chat/conversations/{conversation_id}",
    summary="会话详情",
    response_model=ApiResponse[ConversationData],
)
@limiter.limit("10/second")
async def get_conversation(
    request: Request,
    conversation_id: int,
    principal: Principal = Depends(get_current_principal),
    repo: ConversationRepository = Depends(get_conversation_repo),
):
    conversation = await _get_accessible(repo, conversation_id, principal)
    return ApiResponse.ok(data=ConversationData.model_validate(conversation))


@router.get(
    "/chat/conversations/{conversation_id}/messages",
    summary="获取历史消息",
    response_model=ApiResponse[MessagesPageData],
)
@limiter.limit("10/second")
async def get_messages(
    request: Request,
    conversation_id: int,
    skip: int = Query(0, ge=0, description="跳过条数（分页偏移）"),
    limit: int = Query(settings.CHAT_HISTORY_LIMIT, ge=1, le=500, description="每页最大条数"),
    principal: Principal = Depends(get_current_principal),
    repo: ConversationRepository = Depends(get_conversation_repo),
    messages: MessageRepository = Depends(get_message_repo),
):
    """获取会话的历史消息（分页，按时间正序）。

    Args:
        conversation_id: 会话 ID。
        skip: 跳过条数（分页偏移）。
        limit: 每页最大条数（1-500）。
    """
    await _get_accessible(repo, conversation_id, principal)
    records = await messages.get_messages(conversation_id, skip=skip, limit=limit)
    total = await messages.count_messages(conversation_id)
    return ApiResponse.ok(
        data=MessagesPageData(
            conversation_id=conversation_id,
            messages=[MessageData.model_validate(r) for r in records],
            total=total,
        ),
    )


@router.post(
    "/chat/conversations/with-user",
    summary="获取或创建私聊",
    response_model=ApiResponse[ConversationData],
)
@limiter.limit("5/second")
async def conversation_with_user(
    request: Request,
    body: WithUserRequest,
    principal: Principal = Depends(get_current_principal),
    repo: ConversationRepository = Depends(get_conversation_repo),
):
    if body.user_id is None:
        raise InvalidMessageError("User ID is required")
    if body.user_id == principal.id:
        raise InvalidMessageError("Cannot create a conversation with yourself")
    conversation = await repo.find_or_create_direct(principal.id, body.user_id)
    return ApiResponse.ok(data=ConversationData.model_validate(conversation))


@router.post(
    "/chat/conversations/group",
    summary="获取或创建群组",
    response_model=ApiResponse[ConversationData],
)
@limiter.limit("5/second")
async def create_group_conversation(
    request: Request,
    body: CreateGroupRequest,
    principal: Principal = Depends(get_current_principal),
    repo: ConversationRepository = Depends(get_conversation_repo),
):
    """创建群组会话；当前用户已在同名群组中时直接返回该群组。"""
    participants = sorted({principal.id, *body.participant_ids})
    if len(participants) < 2:
        raise InvalidMessageError("At least one other participant is required")

    if body.group_name:
        existing = await repo.find_group_by_name(body.group_name, principal.id)
        if existing is not None:
            return ApiResponse.ok(data=ConversationData.model_validate(existing))

    conversation = await repo.create_group(body.group_name, participants, created_by=principal.id)
    return ApiResponse.ok(data=ConversationData.model_validate(conversation))


# ── 已读 / 未读 ───────────────────────────────────────────────────────

@router.post(
    "/chat/conversations/{conversation_id}/mark-read",
    summary="标记会话已读",
    response_model=ApiResponse[dict[str, int]],
)
@limiter.limit("10/second")
async def mark_read(
    request: Request,
    conversation_id: int,
    principal: Principal = Depends(get_current_principal),
    repo: ConversationRepository = Depends(get_conversation_repo),
    messages: MessageRepository = Depends(get_message_repo),
):
    await _get_accessible(repo, conversation_id, principal)
    updated = await messages.mark_conversation_read(conversation_id, principal.id)
    return ApiResponse.ok(data={"updated": updated})


@router.get("/chat/unread", summary="各会话未读数", response_model=ApiResponse[list[UnreadCountData]])
@limiter.limit("10/second")
async def unread_counts(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    repo: ConversationRepository = Depends(get_conversation_repo),
    messages: MessageRepository = Depends(get_message_repo),
):
    conversations = await repo.list_for_user(principal.id)
    counts = await messages.count_unread(principal.id, [c["id"] for c in conversations])
    return ApiResponse.ok(
        data=[UnreadCountData(conversation_id=cid, count=n) for cid, n in sorted(counts.items())],
    )


@router.get(
    "/chat/users/available",
    summary="可发起聊天的用户",
    response_model=ApiResponse[list[AvailableUserData]],
)
@limiter.limit("10/second")
async def available_users(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    users: UserRepository = Depends(get_user_repo),
):
    records = await users.list_available_users(principal.id)
    return ApiResponse.ok(data=[AvailableUserData.model_validate(r) for r in records])
