from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Server settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required from .env
    DATABASE_URL: str

    # Logging Configuration - required from .env
    LOG_LEVEL: str

    # Retention window for messages (24h)
    MESSAGE_TTL_SECONDS: int = 86_400

    # How long an empty room survives after its last activity.
    # Unset means "same as the message TTL".
    ROOM_IDLE_SECONDS: Optional[int] = None

    # Background reaper period, 0 disables the loop (admin prune still works)
    REAPER_INTERVAL_SECONDS: int = 60

    # Shared secret for admin-only routes, empty disables them
    ADMIN_TOKEN: str = ""

    # Bind address for `python -m chatsync`
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    @property
    def room_idle_seconds(self) -> int:
        if self.ROOM_IDLE_SECONDS is None:
            return self.MESSAGE_TTL_SECONDS
        return self.ROOM_IDLE_SECONDS


class SyncSettings(BaseSettings):
    """
    Client-side tuning for RoomSync.

    Every field can be overridden with a SYNC_ prefixed variable,
    e.g. SYNC_POLL_INTERVAL=2.0
    """

    model_config = SettingsConfigDict(env_prefix="SYNC_", extra="ignore")

    poll_interval: float = 1.5
    max_poll_backoff: float = 10.0
    full_resync_every: int = 10

    # Mutation retry budget
    max_attempts: int = 3
    initial_delay: float = 0.2
    max_delay: float = 2.0


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
