from typing import List, Optional, Tuple

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .auth import (Principal, REFRESH, create_access_token, create_refresh_token, decode_token,
                   verify_telegram_login)
from .config import Settings
from .errors import AccessDenied, UserNotFound, UsernameTaken
from .files import require_file
from .models import User
from .repository import Repository
from .schemas import TelegramLogin, Token, UserOut, UserUpdate

logger = structlog.get_logger(__name__)


async def username_taken(session: AsyncSession, username: str, exclude_id: Optional[int] = None) -> bool:
    # Soft-deleted accounts keep their handle reserved.
    stmt = select(User.id).where(User.username == username).execution_options(include_deleted=True)
    if exclude_id is not None:
        stmt = stmt.where(User.id != exclude_id)
    return (await session.execute(stmt)).first() is not None


class UserService:
    def __init__(self, session_factory: async_sessionmaker, settings: Settings):
        self.session_factory = session_factory
        self.settings = settings

    def _tokens(self, user: User) -> Token:
        return Token(
            access_token=create_access_token(user, self.settings),
            refresh_token=create_refresh_token(user, self.settings),
        )

    async def login(self, payload: TelegramLogin) -> Token:
        verify_telegram_login(payload, self.settings)
        async with self.session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(User).where(User.telegram_id == payload.id).execution_options(include_deleted=True)
                )
                user = result.scalar_one_or_none()
                if user is not None and user.deleted:
                    # Logging in again brings a deleted account back.
                    user.deleted = False
                    logger.info("user_restored", user_id=user.id)
                if user is None:
                    username = payload.username or f"unknown_{payload.id}"
                    if await username_taken(session, username):
                        username = f"{username}_{payload.id}"
                    user = await Repository(session, User).save(User(
                        telegram_id=payload.id,
                        first_name=payload.first_name or "No name",
                        username=username,
                        avatar_url=payload.photo_url,
                        auth_date=payload.auth_date,
                    ))
                    logger.info("user_registered", user_id=user.id, telegram_id=payload.id)
                else:
                    user.auth_date = payload.auth_date
        return self._tokens(user)

    async def refresh(self, refresh_token: str) -> Token:
        claims = decode_token(refresh_token, self.settings, expected_type=REFRESH)
        async with self.session_factory() as session:
            user = await Repository(session, User).find_by_id(claims.user_id)
            if user is None:
                raise UserNotFound(claims.user_id)
        return self._tokens(user)

    async def me(self, principal: Principal) -> UserOut:
        return await self.get(principal.user_id)

    async def get(self, user_id: int) -> UserOut:
        async with self.session_factory() as session:
            user = await Repository(session, User).find_by_id(user_id)
            if user is None:
                raise UserNotFound(user_id)
            return UserOut.model_validate(user)

    async def update(self, principal: Principal, user_id: int, request: UserUpdate) -> UserOut:
        if principal.user_id != user_id:
            raise AccessDenied("users may only update their own profile")
        async with self.session_factory() as session:
            async with session.begin():
                user = await Repository(session, User).find_by_id(user_id)
                if user is None:
                    raise UserNotFound(user_id)
                if request.username is not None and request.username != user.username:
                    if await username_taken(session, request.username, exclude_id=user_id):
                        raise UsernameTaken(request.username)
                    user.username = request.username
                if request.first_name is not None:
                    user.first_name = request.first_name
                if request.bio is not None:
                    user.bio = request.bio
                if request.avatar_hash is not None:
                    user.avatar_url = (await require_file(session, request.avatar_hash)).file_url
        return UserOut.model_validate(user)

    async def delete(self, principal: Principal, user_id: int) -> None:
        if principal.user_id != user_id:
            raise AccessDenied("users may only delete their own account")
        async with self.session_factory() as session:
            async with session.begin():
                if await Repository(session, User).trash(user_id) is None:
                    raise UserNotFound(user_id)
        logger.info("user_deleted", user_id=user_id)

    async def search(self, search: Optional[str], page: int, size: int) -> Tuple[List[UserOut], int]:
        stmt = select(User).order_by(User.username)
        if search:
            stmt = stmt.where(User.username.icontains(search, autoescape=True))
        async with self.session_factory() as session:
            users, total = await Repository(session, User).page(stmt, page, size)
            return [UserOut.model_validate(u) for u in users], total
