import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from .config import Settings
from .errors import InvalidCredential, InvalidToken
from .schemas import TelegramLogin

ACCESS = "access"
REFRESH = "refresh"


@dataclass(frozen=True)
class Claims:
    subject: str
    user_id: int
    token_type: str = ACCESS


@dataclass(frozen=True)
class Principal:
    """The verified caller, passed explicitly into every chat operation."""
    user_id: int
    username: str


def _encode(data: dict, settings: Settings, expires_delta: timedelta) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + expires_delta
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)


def create_access_token(user, settings: Settings, expires_delta: Optional[timedelta] = None) -> str:
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.access_token_expire_minutes)
    data = {"sub": user.username, "userId": user.id, "type": ACCESS}
    return _encode(data, settings, expires_delta)


def create_refresh_token(user, settings: Settings, expires_delta: Optional[timedelta] = None) -> str:
    if expires_delta is None:
        expires_delta = timedelta(days=settings.refresh_token_expire_days)
    data = {"sub": user.username, "userId": user.id, "type": REFRESH}
    return _encode(data, settings, expires_delta)


def decode_token(token: str, settings: Settings, expected_type: str = ACCESS) -> Claims:
    """Validate a bearer token and return its claims, or raise InvalidToken."""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except JWTError:
        raise InvalidToken()
    subject = payload.get("sub")
    user_id = payload.get("userId")
    token_type = payload.get("type", ACCESS)
    if not subject or not isinstance(user_id, int) or token_type != expected_type:
        raise InvalidToken()
    return Claims(subject=subject, user_id=user_id, token_type=token_type)


def principal_from_token(token: str, settings: Settings) -> Principal:
    claims = decode_token(token, settings)
    return Principal(user_id=claims.user_id, username=claims.subject)


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def telegram_data_check_string(payload: TelegramLogin) -> str:
    fields = payload.model_dump(exclude={"hash"}, exclude_none=True)
    return "\n".join(f"{key}={fields[key]}" for key in sorted(fields))


def telegram_signature(payload: TelegramLogin, bot_token: str) -> str:
    secret_key = hashlib.sha256(bot_token.encode()).digest()
    check_string = telegram_data_check_string(payload)
    return hmac.new(secret_key, check_string.encode(), hashlib.sha256).hexdigest()


def verify_telegram_login(payload: TelegramLogin, settings: Settings) -> None:
    """Check the widget signature; raise InvalidCredential on mismatch."""
    if not settings.telegram_bot_token:
        raise InvalidCredential("telegram bot token is not configured")
    expected = telegram_signature(payload, settings.telegram_bot_token)
    if not hmac.compare_digest(expected, payload.hash):
        raise InvalidCredential(payload.hash)
