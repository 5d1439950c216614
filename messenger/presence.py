from datetime import datetime
from typing import Callable, Optional

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from .db import utcnow
from .errors import UserNotFound
from .models import User, UserStatus
from .repository import Repository
from .schemas import UserStatusOut

logger = structlog.get_logger(__name__)


class PresenceTracker:
    """ONLINE on connect, OFFLINE plus last_seen on disconnect.

    One session per user is assumed: a second connect re-asserts ONLINE and
    a disconnect of either session flips the user OFFLINE.
    """

    def __init__(self, session_factory: async_sessionmaker, clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    async def _set(self, user_id: int, status: UserStatus, last_seen: Optional[datetime] = None) -> Optional[User]:
        async with self.session_factory() as session:
            async with session.begin():
                user = await Repository(session, User).find_by_id(user_id)
                if user is None:
                    logger.warning("presence_unknown_user", user_id=user_id, status=status.value)
                    return None
                user.status = status
                if last_seen is not None:
                    user.last_seen = last_seen
        return user

    async def connected(self, user_id: int) -> Optional[User]:
        user = await self._set(user_id, UserStatus.ONLINE)
        logger.info("user_online", user_id=user_id)
        return user

    async def disconnected(self, user_id: int) -> Optional[User]:
        user = await self._set(user_id, UserStatus.OFFLINE, last_seen=self.clock())
        logger.info("user_offline", user_id=user_id)
        return user

    async def status(self, user_id: int) -> UserStatusOut:
        async with self.session_factory() as session:
            user = await Repository(session, User).find_by_id(user_id)
            if user is None:
                raise UserNotFound(user_id)
            return UserStatusOut.model_validate(user)
