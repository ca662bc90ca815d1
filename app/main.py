"""
app.main
~~~~~~~~

FastAPI 应用入口 —— 注册路由、挂载中间件、定义生命周期。
"""
from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.api import chat, chat_ws
from app.core.exceptions import ChatError
from app.core.logging import get_logger, setup_logging
from app.core.rate_limit import limiter
from app.core.security import TokenVerifier
from app.core.settings import settings
from app.db import close_mongo, connect_mongo, get_database
from app.db.conversation_repository import ConversationRepository
from app.db.message_repository import MessageRepository
from app.db.user_repository import UserRepository
from app.schemas.api_response import ApiResponse
from app.services.chat_gateway import ChatGateway

# 初始化日志系统（必须在其他模块之前）
setup_logging()
logger = get_logger(__name__)


# ── 生命周期 ──────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期钩子，仅在 worker 启动/关闭时各执行一次。"""
    # ── 启动 ──
    await connect_mongo()
    db = get_database()
    app.state.conversation_repo = ConversationRepository(db)
    app.state.message_repo = MessageRepository(db)
    app.state.user_repo = UserRepository(db)
    app.state.token_verifier = TokenVerifier.from_settings()
    app.state.chat_gateway = ChatGateway.create(
        app.state.token_verifier,
        app.state.conversation_repo,
        app.state.message_repo,
        app.state.user_repo,
        max_length=settings.MESSAGE_MAX_LENGTH,
        rate_limit_interval=settings.WS_RATE_LIMIT_INTERVAL,
    )
    logger.info(
        "🚒 应用已启动 | env=%s | debug=%s | log_level=%s",
        settings.ENVIRONMENT,
        settings.debug,
        settings.effective_log_level,
    )
    yield
    # ── 关闭 ──
    await app.state.chat_gateway.dispose()
    await close_mongo()
    logger.info("👋 应用已关闭")


# ── 创建 FastAPI 实例 ─────────────────────────────────────────────────

app: FastAPI = FastAPI(
    title=settings.PROJECT_NAME,
    description="消防队实时聊天与在线状态 API",
    version=settings.VERSION,
    debug=settings.debug,
    lifespan=lifespan,
)

# ── 限流 ──────────────────────────────────────────────────────────────
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ── CORS 中间件 ───────────────────────────────────────────────────────
if settings.allow_cors_all_origins:
    # dev / test 环境：允许所有来源，方便本地调试
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

# ── 路由挂载 ──────────────────────────────────────────────────────────
app.include_router(chat.router, prefix="/api", tags=["Chat"])
app.include_router(chat_ws.router, tags=["WebSocket Chat"])


# ── 全局异常处理器 ────────────────────────────────────────────────────

@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    """业务异常 → 对应状态码的 ``ApiResponse.fail()``。"""
    if exc.code >= 500:
        logger.error("业务异常: %s %s -> %s", request.method, request.url.path, exc.message)
    else:
        logger.info("请求被拒绝: %s %s -> %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.code,
        content=ApiResponse.from_error(exc).model_dump(),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """捕获所有未处理异常，返回统一的 ApiResponse.fail() 格式。"""
    logger.error("未捕获异常: %s %s -> %s", request.method, request.url, exc, exc_info=True)
    # 非 prod 环境返回详细错误信息，prod 环境隐藏内部细节
    detail = str(exc) if not settings.is_prod else "服务器内部错误"
    response = ApiResponse.fail(msg=detail, code=500, data=None)
    return JSONResponse(
        status_code=500,
        content=response.model_dump(),
    )


@app.get("/health", tags=["System"])
async def health_check(request: Request) -> JSONResponse:
    """验证服务是否正常运行。

    Returns:
        包含服务状态与当前在线人数的 JSON 响应。
    """
    gateway: ChatGateway | None = getattr(request.app.state, "chat_gateway", None)
    return JSONResponse(
        content={
            "status": "ok",
            "environment": settings.ENVIRONMENT,
            "debug": settings.debug,
            "log_level": settings.effective_log_level,
            "connections": len(gateway.registry) if gateway is not None else 0,
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.reload,  # 仅 dev 环境开启热重载
        log_level=settings.effective_log_level.lower(),
    )
