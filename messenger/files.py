import base64
import hashlib
import os
import uuid
from pathlib import Path
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .errors import FileNotFound, UserNotFound, ValidationFailed
from .models import FileAsset, MessageType, User
from .repository import Repository
from .schemas import FileOut

logger = structlog.get_logger(__name__)

EXTENSION_TYPES = {
    "jpg": MessageType.IMAGE, "jpeg": MessageType.IMAGE, "png": MessageType.IMAGE, "gif": MessageType.IMAGE,
    "mp4": MessageType.VIDEO, "mov": MessageType.VIDEO, "avi": MessageType.VIDEO,
    "mp3": MessageType.AUDIO, "wav": MessageType.AUDIO,
    "pdf": MessageType.DOCUMENT, "doc": MessageType.DOCUMENT, "docx": MessageType.DOCUMENT,
}


def detect_message_type(extension: Optional[str]) -> MessageType:
    return EXTENSION_TYPES.get((extension or "").lower(), MessageType.OTHER)


def file_extension(name: Optional[str]) -> Optional[str]:
    if not name or "." not in name:
        return None
    return name.rsplit(".", 1)[1].lower() or None


def content_hash(data: bytes) -> str:
    digest = hashlib.sha256(data).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode()


class LocalBlobStorage:
    """Stores blobs under a directory; locators are ``/<subdir>/<name>`` paths."""

    def __init__(self, root: str):
        self.root = Path(root)

    def store(self, data: bytes, suggested_name: Optional[str], subdir: str = "files") -> str:
        ext = file_extension(suggested_name)
        name = f"{uuid.uuid4()}.{ext}" if ext else str(uuid.uuid4())
        target = self.root / subdir / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        return f"/{subdir}/{name}"

    def read_bytes(self, locator: str) -> bytes:
        path = (self.root / locator.lstrip("/")).resolve()
        if self.root.resolve() not in path.parents:
            raise FileNotFound(locator)
        if not path.is_file():
            raise FileNotFound(locator)
        return path.read_bytes()


class FileService:
    def __init__(self, session_factory: async_sessionmaker, storage: LocalBlobStorage,
                 max_bytes: int = 20 * 1024 * 1024):
        self.session_factory = session_factory
        self.storage = storage
        self.max_bytes = max_bytes

    async def save_file(self, user_id: int, data: bytes, original_name: Optional[str]) -> FileOut:
        """Store an upload; identical content resolves to the same asset."""
        if not data:
            raise ValidationFailed("file is empty")
        if len(data) > self.max_bytes:
            raise ValidationFailed(f"file exceeds {self.max_bytes} bytes")
        digest = content_hash(data)
        async with self.session_factory() as session:
            async with session.begin():
                if await Repository(session, User).find_by_id(user_id) is None:
                    raise UserNotFound(user_id)
                existing = await find_by_hash(session, digest)
                if existing is not None:
                    return FileOut.model_validate(existing)
                ext = file_extension(original_name)
                locator = self.storage.store(data, original_name)
                asset = await Repository(session, FileAsset).save(FileAsset(
                    user_id=user_id,
                    original_name=os.path.basename(original_name or "") or locator.rsplit("/", 1)[-1],
                    file_url=locator,
                    size=len(data),
                    extension=ext,
                    message_type=detect_message_type(ext),
                    hash=digest,
                ))
        logger.info("file_stored", file_id=asset.id, hash=digest, size=asset.size)
        return FileOut.model_validate(asset)

    async def load(self, digest: str):
        """(asset, bytes) for a stored file."""
        async with self.session_factory() as session:
            asset = await require_file(session, digest)
        return asset, self.storage.read_bytes(asset.file_url)


async def find_by_hash(session: AsyncSession, digest: str) -> Optional[FileAsset]:
    result = await session.execute(select(FileAsset).where(FileAsset.hash == digest))
    return result.scalar_one_or_none()


async def require_file(session: AsyncSession, digest: str) -> FileAsset:
    asset = await find_by_hash(session, digest)
    if asset is None:
        raise FileNotFound(digest)
    return asset
