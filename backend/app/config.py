from functools import lru_cache
from pathlib import Path
from typing import Annotated, List

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = Field(default="Nexus API", env="APP_NAME", description="Human readable service name")
    environment: str = Field(default="development", env="ENVIRONMENT", description="Deployment environment name")
    debug: bool = Field(default=False, env="DEBUG", description="Enable debug mode")

    cors_origins: Annotated[List[AnyHttpUrl], NoDecode] = Field(
        default_factory=lambda: [
            "http://localhost",
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1",
        ],
        env="CORS_ORIGINS",
        description="List of allowed CORS origins",
    )

    database_url: str = Field(
        default="sqlite+pysqlite:///./nexus.db",
        env="DATABASE_URL",
        description="SQLAlchemy URL of the relational store",
    )
    db_retry_attempts: int = Field(
        default=3,
        env="DB_RETRY_ATTEMPTS",
        description="Attempts for transient database failures before giving up.",
    )
    db_retry_base_delay_seconds: float = Field(
        default=0.05,
        env="DB_RETRY_BASE_DELAY_SECONDS",
        description="Initial backoff between retries; doubled on every attempt.",
    )

    jwt_secret_key: str = Field(default="changeme", env="JWT_SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", env="JWT_ALGORITHM")

    chat_history_default_limit: int = Field(default=50, env="CHAT_HISTORY_DEFAULT_LIMIT")
    chat_history_max_limit: int = Field(default=100, env="CHAT_HISTORY_MAX_LIMIT")
    chat_message_max_length: int = Field(default=2000, env="CHAT_MESSAGE_MAX_LENGTH")
    user_search_max_limit: int = Field(default=50, env="USER_SEARCH_MAX_LIMIT")
    dm_require_friendship: bool = Field(
        default=False,
        env="DM_REQUIRE_FRIENDSHIP",
        description="Only allow direct conversations between accepted friends.",
    )

    websocket_keepalive_timeout_seconds: float = Field(
        default=30, env="WEBSOCKET_KEEPALIVE_TIMEOUT_SECONDS"
    )
    websocket_keepalive_ping_interval_seconds: float = Field(
        default=25, env="WEBSOCKET_KEEPALIVE_PING_INTERVAL_SECONDS"
    )
    presence_grace_seconds: float = Field(
        default=5.0,
        env="PRESENCE_GRACE_SECONDS",
        description="Delay before a user without live connections is reported offline.",
    )
    presence_heartbeat_timeout_seconds: float = Field(
        default=90.0,
        env="PRESENCE_HEARTBEAT_TIMEOUT_SECONDS",
        description="Connections silent for longer than this are treated as disconnected.",
    )
    presence_sweep_interval_seconds: float = Field(
        default=15.0,
        env="PRESENCE_SWEEP_INTERVAL_SECONDS",
        description="How often stale connections are swept.",
    )

    realtime_redis_url: str | None = Field(
        default=None,
        env="REALTIME_REDIS_URL",
        description="Redis URL used to relay events between nodes. Disabled when unset.",
    )
    realtime_namespace: str = Field(default="nexus.realtime", env="REALTIME_NAMESPACE")
    realtime_node_id: str | None = Field(default=None, env="REALTIME_NODE_ID")

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[2] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v):  # type: ignore[override]
        if v in (None, "", Ellipsis):
            return v
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        if isinstance(v, (list, tuple, set)):
            return list(v)
        return v

    @field_validator("chat_history_default_limit", "chat_history_max_limit", "db_retry_attempts")
    @classmethod
    def ensure_positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be at least 1")
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()
