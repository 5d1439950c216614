import mimetypes
from contextlib import asynccontextmanager
from typing import List, Optional

import structlog
import uvicorn
from fastapi import (Depends, FastAPI, File, Header, Query, Request, UploadFile, WebSocket,
                     WebSocketDisconnect)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from .auth import Principal, bearer_token, principal_from_token
from .broker import Broker, InMemoryBroker
from .chats import ChatService
from .config import Settings, get_settings
from .db import create_all, create_engine, create_session_factory
from .errors import ChatError, InvalidToken, pick_locale
from .files import FileService, LocalBlobStorage
from .logging_config import setup_logging
from .models import ChatType
from .presence import PresenceTracker
from .redis_pubsub import RedisBroker
from .router import DeliveryRouter
from .schemas import (AddMembers, ChatListItem, ChatOut, FileOut, GroupChatOut, GroupCreate, MessageOut, Page,
                      PrivateChatCreate, RefreshRequest, TelegramLogin, Token, UserOut, UserStatusOut,
                      UserUpdate)
from .session import Connection, authenticate_handshake
from .users import UserService

logger = structlog.get_logger(__name__)


def create_broker(settings: Settings) -> Broker:
    if settings.broker == "redis":
        return RedisBroker(settings.redis_url)
    return InMemoryBroker(queue_size=settings.subscriber_queue_size)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings)
        engine = create_engine(settings.database_url, echo=settings.sql_echo)
        await create_all(engine)
        session_factory = create_session_factory(engine)
        broker = create_broker(settings)
        router = DeliveryRouter(broker)

        app.state.engine = engine
        app.state.broker = broker
        app.state.router = router
        app.state.chats = ChatService(session_factory, router)
        app.state.users = UserService(session_factory, settings)
        app.state.presence = PresenceTracker(session_factory)
        app.state.files = FileService(session_factory, LocalBlobStorage(settings.upload_dir),
                                      max_bytes=settings.max_upload_bytes)
        logger.info("startup", broker=settings.broker, database=engine.url.render_as_string())
        try:
            yield
        finally:
            await broker.close()
            await engine.dispose()
            logger.info("shutdown")

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.settings = settings
    if settings.cors_origin_list:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origin_list,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError):
        locale = pick_locale(request.headers.get("accept-language"), settings.default_locale)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(locale))

    def get_principal(authorization: Optional[str] = Header(default=None)) -> Principal:
        token = bearer_token(authorization)
        if token is None:
            raise InvalidToken()
        return principal_from_token(token, settings)

    def page_size(size: Optional[int] = Query(default=None, ge=1)) -> int:
        return min(size or settings.default_page_size, settings.max_page_size)

    # --- auth ---

    @app.post("/api/v1/auth/login", response_model=Token)
    async def login(payload: TelegramLogin, request: Request):
        return await request.app.state.users.login(payload)

    @app.post("/api/v1/auth/refresh", response_model=Token)
    async def refresh(payload: RefreshRequest, request: Request):
        return await request.app.state.users.refresh(payload.refresh_token)

    @app.get("/api/v1/auth/me", response_model=UserOut)
    async def me(request: Request, principal: Principal = Depends(get_principal)):
        return await request.app.state.users.me(principal)

    # --- users ---

    @app.get("/api/v1/users", response_model=Page[UserOut])
    async def search_users(request: Request, search: Optional[str] = None, page: int = Query(default=0, ge=0),
                           size: int = Depends(page_size), principal: Principal = Depends(get_principal)):
        users, total = await request.app.state.users.search(search, page, size)
        return Page[UserOut](items=users, total=total, page=page, size=size)

    @app.get("/api/v1/users/{user_id}/status", response_model=UserStatusOut)
    async def user_status(user_id: int, request: Request, principal: Principal = Depends(get_principal)):
        return await request.app.state.presence.status(user_id)

    @app.put("/api/v1/users/{user_id}", response_model=UserOut)
    async def update_user(user_id: int, payload: UserUpdate, request: Request,
                          principal: Principal = Depends(get_principal)):
        return await request.app.state.users.update(principal, user_id, payload)

    @app.delete("/api/v1/users/{user_id}", status_code=204)
    async def delete_user(user_id: int, request: Request, principal: Principal = Depends(get_principal)):
        await request.app.state.users.delete(principal, user_id)

    # --- chats ---

    @app.post("/api/v1/chats", response_model=ChatOut, status_code=201)
    async def create_group(payload: GroupCreate, request: Request, principal: Principal = Depends(get_principal)):
        return await request.app.state.chats.create_group_chat(principal, payload)

    @app.post("/api/v1/chats/private", response_model=ChatOut)
    async def open_private(payload: PrivateChatCreate, request: Request,
                           principal: Principal = Depends(get_principal)):
        return await request.app.state.chats.open_private_chat(principal, payload.user_id)

    @app.post("/api/v1/chats/{chat_id}/members", response_model=List[int])
    async def add_members(chat_id: int, payload: AddMembers, request: Request,
                          principal: Principal = Depends(get_principal)):
        return await request.app.state.chats.add_members(principal, chat_id, payload.member_ids)

    @app.get("/api/v1/chats", response_model=Page[ChatListItem])
    async def list_chats(request: Request, chat_type: Optional[ChatType] = None,
                         page: int = Query(default=0, ge=0), size: int = Depends(page_size),
                         principal: Principal = Depends(get_principal)):
        return await request.app.state.chats.list_chats(principal, page, size, chat_type)

    @app.get("/api/v1/chats/{chat_id}", response_model=GroupChatOut)
    async def chat_details(chat_id: int, request: Request, principal: Principal = Depends(get_principal)):
        return await request.app.state.chats.group_details(principal, chat_id)

    @app.delete("/api/v1/chats/{chat_id}", status_code=204)
    async def delete_chat(chat_id: int, request: Request, for_everyone: bool = False,
                          principal: Principal = Depends(get_principal)):
        await request.app.state.chats.delete_chat(principal, chat_id, for_everyone)

    @app.get("/api/v1/chats/{chat_id}/messages", response_model=Page[MessageOut])
    async def list_messages(chat_id: int, request: Request, page: int = Query(default=0, ge=0),
                            size: int = Depends(page_size), principal: Principal = Depends(get_principal)):
        return await request.app.state.chats.list_messages(principal, chat_id, page, size)

    # --- files ---

    @app.post("/api/v1/files", response_model=FileOut, status_code=201)
    async def upload_file(request: Request, file: UploadFile = File(...),
                          principal: Principal = Depends(get_principal)):
        data = await file.read()
        return await request.app.state.files.save_file(principal.user_id, data, file.filename)

    @app.get("/api/v1/files/{digest}")
    async def download_file(digest: str, request: Request, principal: Principal = Depends(get_principal)):
        asset, data = await request.app.state.files.load(digest)
        media_type = mimetypes.guess_type(asset.original_name)[0] or "application/octet-stream"
        return Response(content=data, media_type=media_type,
                        headers={"Content-Disposition": f'inline; filename="{asset.original_name}"'})

    # --- real time ---

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        principal = authenticate_handshake(websocket, settings)
        if principal is None and not settings.ws_allow_anonymous:
            await websocket.close(code=1008, reason="authentication required")
            return

        await websocket.accept()
        state = websocket.app.state
        locale = pick_locale(websocket.headers.get("accept-language"), settings.default_locale)
        connection = Connection(websocket, principal, state.chats, state.broker, state.router, locale)
        if principal is not None:
            await state.presence.connected(principal.user_id)
        await connection.open()

        try:
            while True:
                data = await websocket.receive_text()
                await connection.handle(data)
        except WebSocketDisconnect:
            pass
        finally:
            await connection.close()
            if principal is not None:
                await state.presence.disconnected(principal.user_id)

    return app


app = create_app()


def run() -> None:
    settings = get_settings()
    uvicorn.run("messenger.main:app", host="0.0.0.0", port=8000, log_level=settings.log_level.lower())
