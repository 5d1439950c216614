"""
Configuration for the messenger backend.

Values come from the environment (prefix ``MESSENGER_``) or a ``.env`` file.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MESSENGER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "messenger"

    database_url: str = "sqlite+aiosqlite:///./chat.db"
    sql_echo: bool = False

    secret_key: str = "change-me-in-production"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60 * 24 * 7
    refresh_token_expire_days: int = 30

    telegram_bot_token: str = ""

    broker: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"
    subscriber_queue_size: int = 1000

    upload_dir: str = "uploads"
    max_upload_bytes: int = 20 * 1024 * 1024

    # Accept real-time connections whose handshake carries no valid token.
    ws_allow_anonymous: bool = False

    default_locale: str = "en"
    log_level: str = "INFO"
    log_json: bool = False

    default_page_size: int = Field(default=20, ge=1)
    max_page_size: int = Field(default=100, ge=1)

    cors_origins: Optional[str] = None  # comma-separated list or "*"

    @property
    def cors_origin_list(self) -> list[str]:
        if not self.cors_origins:
            return []
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
