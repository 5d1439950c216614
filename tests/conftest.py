"""Shared fixtures: a throwaway SQLite database per test and a recording broker."""

import itertools
import json

import pytest

from messenger.auth import Principal, telegram_signature
from messenger.broker import InMemoryBroker
from messenger.chats import ChatService
from messenger.config import Settings
from messenger.db import create_all, create_engine, create_session_factory
from messenger.files import FileService, LocalBlobStorage
from messenger.models import User
from messenger.router import DeliveryRouter
from messenger.schemas import TelegramLogin
from messenger.users import UserService

BOT_TOKEN = "123456:TEST-BOT-TOKEN"


class RecordingBroker(InMemoryBroker):
    """In-memory broker that also keeps every published envelope."""

    def __init__(self):
        super().__init__(queue_size=100)
        self.published = []

    async def publish(self, channel, message):
        self.published.append((channel, json.loads(message)))
        await super().publish(channel, message)

    def on(self, channel):
        return [envelope for c, envelope in self.published if c == channel]

    def events(self, channel):
        return [envelope["event"] for envelope in self.on(channel)]

    def clear(self):
        self.published.clear()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        secret_key="test-secret",
        telegram_bot_token=BOT_TOKEN,
        upload_dir=str(tmp_path / "uploads"),
        max_upload_bytes=1024,
    )


@pytest.fixture
async def engine(settings):
    engine = create_engine(settings.database_url)
    await create_all(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def broker():
    return RecordingBroker()


@pytest.fixture
def router(broker):
    return DeliveryRouter(broker)


@pytest.fixture
def chats(session_factory, router):
    return ChatService(session_factory, router)


@pytest.fixture
def users(session_factory, settings):
    return UserService(session_factory, settings)


@pytest.fixture
def files(session_factory, settings):
    return FileService(session_factory, LocalBlobStorage(settings.upload_dir), max_bytes=settings.max_upload_bytes)


@pytest.fixture
def make_user(session_factory):
    counter = itertools.count(1)

    async def factory(username=None, first_name=None):
        n = next(counter)
        async with session_factory() as session:
            async with session.begin():
                user = User(
                    telegram_id=5000 + n,
                    first_name=first_name or f"User {n}",
                    username=username or f"user{n}",
                )
                session.add(user)
        return user

    return factory


def principal(user):
    return Principal(user_id=user.id, username=user.username)


def signed_login(**fields):
    fields.setdefault("id", 777)
    fields.setdefault("first_name", "Alice")
    fields.setdefault("auth_date", 1700000000)
    unsigned = TelegramLogin(hash="", **fields)
    return TelegramLogin(hash=telegram_signature(unsigned, BOT_TOKEN), **fields)
