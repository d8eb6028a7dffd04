"""Application configuration using pydantic-settings.

All environment variables are loaded from .env file or environment.
No hardcoded secrets, URLs, or credentials.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from app.errors import ConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # LINE Messaging API
    line_channel_access_token: str = Field(default="", description="LINE channel access token")
    line_channel_secret: str = Field(default="", description="LINE channel secret (webhook signature)")
    line_api_base_url: str = Field(default="https://api.line.me", description="LINE API base URL")

    # Redis configuration
    redis_host: str = Field(default="localhost", description="Redis host")
    redis_port: int = Field(default=6379, description="Redis port")
    redis_password: str = Field(default="", description="Redis password (requirepass)")
    redis_db: int = Field(default=0, description="Redis database number")

    # Subscriber store
    subscriber_key_prefix: str = Field(default="subscribers", description="Key namespace for subscriptions")

    # Sweep scheduler
    notification_interval_seconds: int = Field(default=3600, description="Per-subscriber notification interval")
    sweep_interval_seconds: int = Field(default=60, description="Sweep cadence (bounds drift)")
    sweep_lock_ttl_seconds: int = Field(default=300, description="TTL of the cross-process sweep lock")
    sweep_concurrency: int = Field(default=20, description="Max concurrent deliveries per sweep")
    sweep_delivery_mode: Literal["push", "multicast"] = Field(
        default="push",
        description="push: one call per due subscriber; multicast: chunked batches",
    )
    scheduler_enabled: bool = Field(default=True, description="Run the sweep inside the web process")

    # Outbound timeouts and limits
    delivery_timeout_seconds: float = Field(default=10.0, description="Timeout for one sweep delivery")
    reply_timeout_seconds: float = Field(default=5.0, description="Timeout for one webhook reply")
    multicast_chunk_size: int = Field(default=500, description="LINE multicast recipient ceiling")

    broadcast_message: str = Field(
        default="1時間が経過しました！定期連絡です。",
        description="Static message delivered to due subscribers",
    )

    # Application settings
    app_name: str = Field(default="LineHourlyNotifier", description="Application name")
    log_level: str = Field(default="INFO", description="Logging level")

    @property
    def redis_url(self) -> str:
        """Construct Redis URL."""
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/{self.redis_db}"
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    def missing_credentials(self) -> list[str]:
        """Names of required LINE credentials that are not set."""
        missing = []
        if not self.line_channel_access_token:
            missing.append("LINE_CHANNEL_ACCESS_TOKEN")
        if not self.line_channel_secret:
            missing.append("LINE_CHANNEL_SECRET")
        return missing

    def require_credentials(self) -> None:
        """Raise ConfigurationError if any LINE credential is missing."""
        missing = self.missing_credentials()
        if missing:
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance.

    Using @lru_cache prevents crash on import when .env is missing (e.g. during tests).
    Settings are loaded lazily on first access.
    """
    return Settings()
