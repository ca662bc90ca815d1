from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.security import Principal, TokenVerifier
from app.db.conversation_repository import ConversationRepository
from app.db.message_repository import MessageRepository
from app.db.user_repository import UserRepository
from app.services.chat_gateway import ChatGateway

_bearer = HTTPBearer(auto_error=False)


def get_chat_gateway(request: Request) -> ChatGateway:
    return request.app.state.chat_gateway


def get_token_verifier(request: Request) -> TokenVerifier:
    return request.app.state.token_verifier


def get_conversation_repo(request: Request) -> ConversationRepository:
    return request.app.state.conversation_repo


def get_message_repo(request: Request) -> MessageRepository:
    return request.app.state.message_repo


def get_user_repo(request: Request) -> UserRepository:
    return request.app.state.user_repo


def get_current_principal(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
    verifier: TokenVerifier = Depends(get_token_verifier),
) -> Principal:
    # 校验失败抛出 AuthenticationError，由全局处理器转换为 401
    return verifier.verify(credentials.credentials if credentials else None)
