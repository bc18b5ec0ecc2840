from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="ignore",
    )

    app_name: str = "reelcast"
    environment: str = Field(default="local", validation_alias=AliasChoices("ENVIRONMENT", "REELCAST_ENVIRONMENT"))
    database_url: str = Field(
        default="postgresql+asyncpg://postgres:postgres@db:5432/reelcast",
        validation_alias=AliasChoices("DATABASE_URL", "REELCAST_DATABASE_URL"),
    )
    public_base_url: str = Field(default="http://localhost:8000", validation_alias=AliasChoices("PUBLIC_BASE_URL", "REELCAST_PUBLIC_BASE_URL"))

    # OAuth clients
    youtube_client_id: str | None = Field(default=None, validation_alias=AliasChoices("YOUTUBE_CLIENT_ID", "GOOGLE_CLIENT_ID", "REELCAST_YOUTUBE_CLIENT_ID"))
    youtube_client_secret: str | None = Field(default=None, validation_alias=AliasChoices("YOUTUBE_CLIENT_SECRET", "GOOGLE_CLIENT_SECRET", "REELCAST_YOUTUBE_CLIENT_SECRET"))
    tiktok_client_key: str | None = Field(default=None, validation_alias=AliasChoices("TIKTOK_CLIENT_KEY", "REELCAST_TIKTOK_CLIENT_KEY"))
    tiktok_client_secret: str | None = Field(default=None, validation_alias=AliasChoices("TIKTOK_CLIENT_SECRET", "REELCAST_TIKTOK_CLIENT_SECRET"))
    instagram_app_id: str | None = Field(default=None, validation_alias=AliasChoices("INSTAGRAM_APP_ID", "FACEBOOK_APP_ID", "REELCAST_INSTAGRAM_APP_ID"))
    instagram_app_secret: str | None = Field(default=None, validation_alias=AliasChoices("INSTAGRAM_APP_SECRET", "FACEBOOK_APP_SECRET", "REELCAST_INSTAGRAM_APP_SECRET"))
    oauth_redirect_base_url: str | None = Field(default=None, validation_alias=AliasChoices("OAUTH_REDIRECT_BASE_URL", "REELCAST_OAUTH_REDIRECT_BASE_URL"))
    oauth_state_secret: str = Field(default="change-me", validation_alias=AliasChoices("OAUTH_STATE_SECRET", "REELCAST_OAUTH_STATE_SECRET"))
    oauth_state_max_age_sec: int = Field(default=15 * 60, validation_alias=AliasChoices("OAUTH_STATE_MAX_AGE_SEC", "REELCAST_OAUTH_STATE_MAX_AGE_SEC"))

    # Generation pipeline
    video_generation_webhook_url: str | None = Field(default=None, validation_alias=AliasChoices("VIDEO_GENERATION_WEBHOOK_URL", "REELCAST_VIDEO_GENERATION_WEBHOOK_URL"))
    webhook_secret: str | None = Field(default=None, validation_alias=AliasChoices("WEBHOOK_SECRET", "N8N_WEBHOOK_SECRET", "REELCAST_WEBHOOK_SECRET"))

    # Upload behaviour
    http_timeout_sec: float = Field(default=60.0, validation_alias=AliasChoices("HTTP_TIMEOUT_SEC", "REELCAST_HTTP_TIMEOUT_SEC"))
    instagram_poll_interval_sec: float = Field(default=10.0, validation_alias=AliasChoices("INSTAGRAM_POLL_INTERVAL_SEC", "REELCAST_INSTAGRAM_POLL_INTERVAL_SEC"))
    instagram_poll_max_attempts: int = Field(default=30, validation_alias=AliasChoices("INSTAGRAM_POLL_MAX_ATTEMPTS", "REELCAST_INSTAGRAM_POLL_MAX_ATTEMPTS"))
    refresh_lock_backend: str = Field(default="local", validation_alias=AliasChoices("REFRESH_LOCK_BACKEND", "REELCAST_REFRESH_LOCK_BACKEND"))
    refresh_lock_ttl_sec: int = Field(default=60, validation_alias=AliasChoices("REFRESH_LOCK_TTL_SEC", "REELCAST_REFRESH_LOCK_TTL_SEC"))

    # Infrastructure
    redis_url: str = Field(default="redis://redis:6379/0", validation_alias=AliasChoices("REDIS_URL", "REELCAST_REDIS_URL"))
    celery_enabled: bool = Field(default=True, validation_alias=AliasChoices("CELERY_ENABLED", "REELCAST_CELERY_ENABLED"))
    scheduler_enabled: bool = Field(default=True, validation_alias=AliasChoices("SCHEDULER_ENABLED", "REELCAST_SCHEDULER_ENABLED"))
    watchdog_interval_minutes: int = Field(default=5, validation_alias=AliasChoices("WATCHDOG_INTERVAL_MINUTES", "REELCAST_WATCHDOG_INTERVAL_MINUTES"))
    stuck_publishing_minutes: int = Field(default=30, validation_alias=AliasChoices("STUCK_PUBLISHING_MINUTES", "REELCAST_STUCK_PUBLISHING_MINUTES"))
    stuck_generating_minutes: int = Field(default=120, validation_alias=AliasChoices("STUCK_GENERATING_MINUTES", "REELCAST_STUCK_GENERATING_MINUTES"))

    telegram_bot_token: str | None = Field(default=None, validation_alias=AliasChoices("TELEGRAM_BOT_TOKEN", "REELCAST_TELEGRAM_BOT_TOKEN"))
    telegram_chat_id: str | None = Field(default=None, validation_alias=AliasChoices("TELEGRAM_CHAT_ID", "REELCAST_TELEGRAM_CHAT_ID"))
    admin_password: str | None = Field(default=None, validation_alias=AliasChoices("ADMIN_PASSWORD", "REELCAST_ADMIN_PASSWORD"))

    @property
    def async_database_url(self) -> str:
        if self.database_url.startswith("postgresql+"):
            return self.database_url
        if self.database_url.startswith("postgresql://"):
            return self.database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        return self.database_url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
