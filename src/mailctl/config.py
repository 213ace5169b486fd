"""Configuration management using pydantic-settings."""

from functools import lru_cache
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    AIDEV-NOTE: All configuration is done via environment variables.
    Account credentials are NOT configuration; they arrive with each connect
    call and live only as long as the session. BIND_ADDRESS defaults to
    127.0.0.1 since the API accepts credentials and serves mail content.
    """

    model_config = SettingsConfigDict(
        env_prefix="",
        case_sensitive=True,
    )

    # Boundary API
    http_port: Annotated[int, Field(ge=1, le=65535)] = Field(
        default=8030, alias="HTTP_PORT", description="HTTP API port"
    )
    bind_address: str = Field(
        default="127.0.0.1",
        alias="BIND_ADDRESS",
        description="Bind address for the HTTP API (use 0.0.0.0 to expose)",
    )
    cors_origins: str = Field(
        default="",
        alias="CORS_ORIGINS",
        description="Allowed CORS origins (empty = same-origin only)",
    )

    # Network round-trip caps
    command_timeout_seconds: Annotated[int, Field(ge=1, le=600)] = Field(
        default=60,
        alias="COMMAND_TIMEOUT_SECONDS",
        description="Upper bound for a single server round-trip",
    )
    connect_timeout_seconds: Annotated[int, Field(ge=1, le=600)] = Field(
        default=30,
        alias="CONNECT_TIMEOUT_SECONDS",
        description="Upper bound for establishing a link",
    )
    disconnect_grace_seconds: Annotated[float, Field(gt=0, le=60)] = Field(
        default=5,
        alias="DISCONNECT_GRACE_SECONDS",
        description="How long disconnect waits for an in-flight operation",
    )

    # Fetching
    default_mailbox: str = Field(
        default="INBOX", alias="DEFAULT_MAILBOX", description="Mailbox fetched by default"
    )
    default_fetch_limit: Annotated[int, Field(ge=0)] = Field(
        default=50, alias="DEFAULT_FETCH_LIMIT", description="Messages per fetch by default"
    )
    decode_concurrency: Annotated[int, Field(ge=1, le=64)] = Field(
        default=8,
        alias="DECODE_CONCURRENCY",
        description="Payloads decoded in parallel per batch",
    )

    # Keepalive
    keepalive_interval_seconds: Annotated[int, Field(ge=0)] = Field(
        default=0,
        alias="KEEPALIVE_INTERVAL_SECONDS",
        description="NOOP the retrieval link every N seconds (0 = disabled)",
    )

    log_level: str = Field(default="INFO", alias="LOG_LEVEL", description="Root log level")

    @field_validator("bind_address")
    @classmethod
    def validate_bind_address(cls, v: str) -> str:
        """Validate bind address is a valid IP or hostname."""
        v = v.strip()
        if not v:
            return "127.0.0.1"
        return v

    @field_validator("cors_origins")
    @classmethod
    def validate_cors_origins(cls, v: str) -> str:
        """Validate CORS origins - never allow wildcard."""
        if v.strip() == "*":
            raise ValueError(
                "Wildcard CORS origins (*) are not allowed for security. "
                "Please specify explicit origins."
            )
        return v.strip()

    @field_validator("keepalive_interval_seconds")
    @classmethod
    def validate_keepalive(cls, v: int) -> int:
        """Keepalive is either off or at least 10 seconds apart."""
        if 0 < v < 10:
            raise ValueError("KEEPALIVE_INTERVAL_SECONDS must be 0 or at least 10")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    @property
    def cors_origins_list(self) -> list[str]:
        """Return CORS origins as a list."""
        if not self.cors_origins:
            return []
        return [
            origin.strip() for origin in self.cors_origins.split(",") if origin.strip()
        ]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    AIDEV-NOTE: This is cached to avoid re-parsing environment variables.
    For testing, you can create Settings instances directly.
    """
    return Settings()
