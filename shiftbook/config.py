"""Runtime configuration resolved from the environment (and .env)."""

import os
from dataclasses import dataclass, field
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()


def _env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    return value if value else default


@dataclass
class Settings:
    store_backend: str = field(
        default_factory=lambda: _env("SHIFTBOOK_STORE", "memory")
    )
    database_url: str | None = field(
        default_factory=lambda: _env("DATABASE_URL")
    )
    line_channel_access_token: str | None = field(
        default_factory=lambda: _env("LINE_CHANNEL_ACCESS_TOKEN")
    )
    line_channel_secret: str | None = field(
        default_factory=lambda: _env("LINE_CHANNEL_SECRET")
    )
    line_api_base: str = field(
        default_factory=lambda: _env("LINE_API_BASE", "https://api.line.me")
    )
    line_push_timeout: float = field(
        default_factory=lambda: float(_env("LINE_PUSH_TIMEOUT", "10"))
    )
    log_level: str = field(default_factory=lambda: _env("LOG_LEVEL", "INFO"))

    @property
    def line_configured(self) -> bool:
        """Both LINE secrets must be present before pushes are attempted."""
        return bool(self.line_channel_access_token and self.line_channel_secret)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
