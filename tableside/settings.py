from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


_PROJECT_ROOT = Path(__file__).resolve().parents[1]


class Settings(BaseSettings):
    """
    Dashboard service configuration.

    Values come from `config.env` (non-dot env file) or `.env`, at the
    repository root or in the current directory, and from the environment.
    """

    model_config = SettingsConfigDict(
        env_file=(
            str(_PROJECT_ROOT / "config.env"),
            str(_PROJECT_ROOT / ".env"),
            "config.env",
            ".env",
        ),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Hosted backend (REST + auth endpoints)
    backend_url: str = Field(default="http://localhost:54321", validation_alias="BACKEND_URL")
    backend_anon_key: str = Field(default="", validation_alias="BACKEND_ANON_KEY")
    access_token: str = Field(default="", validation_alias="ACCESS_TOKEN")
    refresh_token: str = Field(default="", validation_alias="REFRESH_TOKEN")
    http_timeout_seconds: float = Field(default=10.0, validation_alias="HTTP_TIMEOUT_SECONDS")

    # Realtime change feed
    redis_url: str = Field(default="redis://localhost:6379", validation_alias="REDIS_URL")
    channel_prefix: str = Field(default="realtime", validation_alias="CHANNEL_PREFIX")
    resubscribe_delay_seconds: float = Field(default=5.0, validation_alias="RESUBSCRIBE_DELAY_SECONDS")

    # Background consistency
    refetch_interval_seconds: float = Field(default=60.0, validation_alias="REFETCH_INTERVAL_SECONDS")
    session_check_interval_seconds: float = Field(default=300.0, validation_alias="SESSION_CHECK_INTERVAL_SECONDS")
    network_retries: int = Field(default=2, validation_alias="NETWORK_RETRIES")

    # Dashboard behaviour
    delayed_after_minutes: int = Field(default=15, validation_alias="DELAYED_AFTER_MINUTES")

    # CORS configuration
    cors_origins: str = Field(
        default="http://localhost:3000",
        validation_alias="CORS_ORIGINS"
    )

    @property
    def rest_url(self) -> str:
        return f"{self.backend_url.rstrip('/')}/rest/v1"

    @property
    def auth_url(self) -> str:
        return f"{self.backend_url.rstrip('/')}/auth/v1"

    @property
    def cors_origin_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


settings = Settings()
