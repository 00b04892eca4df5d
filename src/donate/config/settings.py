"""Application configuration schema and validation."""

from pathlib import Path
from typing import Literal

from pydantic import AnyHttpUrl, Field, PostgresDsn, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    env: Literal["dev", "staging", "prod"] = Field(
        ...,
        description="Application environment",
    )
    db_dsn: PostgresDsn = Field(
        ...,
        description="PostgreSQL database connection string",
    )
    db_pool_min: int = Field(
        default=2,
        ge=1,
        description="Minimum database connection pool size",
    )
    db_pool_max: int = Field(
        default=10,
        ge=1,
        description="Maximum database connection pool size",
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    public_url: AnyHttpUrl = Field(
        default="http://localhost:8080",
        description="Public base URL used for return, cancel and order links",
    )
    community_title: str = Field(
        default="Community",
        description="Community name shown on payment pages",
    )
    packages_file: Path = Field(
        default=Path("packages.json"),
        description="JSON catalogue of donation packages and perks",
    )
    payment_provider: Literal["stripe", "fake"] = Field(
        default="stripe",
        description="Payment gateway implementation",
    )
    stripe_secret: SecretStr = Field(
        default=SecretStr(""),
        validate_default=True,
        description="Stripe secret API key",
    )
    stripe_webhook_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Stripe webhook signing secret",
    )
    stripe_max_network_retries: int = Field(
        default=2,
        ge=0,
        le=5,
        description="Retries for idempotent Stripe requests",
    )
    webhook_server_port: int = Field(
        default=8080,
        ge=1,
        le=65535,
        description="Port for the payment webhook HTTP server",
    )
    discord_token: SecretStr = Field(
        default=SecretStr(""),
        description="Discord bot token used to grant role perks",
    )
    discord_guild_id: str = Field(
        default="",
        description="Discord guild (server) ID for role perks",
    )
    priority_queue_api_url: str = Field(
        default="",
        description="Base URL of the game-server priority queue API",
    )
    priority_queue_api_key: SecretStr = Field(
        default=SecretStr(""),
        description="API key for the priority queue API",
    )
    http_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        le=60,
        description="Total timeout for outgoing perk backend HTTP calls",
    )

    @field_validator("db_pool_max")
    @classmethod
    def validate_pool_max(cls, v: int, info) -> int:
        """Ensure pool_max >= pool_min."""
        if "db_pool_min" in info.data and v < info.data["db_pool_min"]:
            raise ValueError("db_pool_max must be >= db_pool_min")
        return v

    @field_validator("stripe_secret")
    @classmethod
    def validate_stripe_secret(cls, v: SecretStr, info) -> SecretStr:
        """Require a Stripe key for the live gateway outside of dev."""
        data = info.data
        if (
            data.get("payment_provider") == "stripe"
            and data.get("env") in ("staging", "prod")
            and not v.get_secret_value()
        ):
            raise ValueError("stripe_secret is required when payment_provider is stripe")
        return v

    def base_url(self) -> str:
        """Public URL without trailing slash."""
        return str(self.public_url).rstrip("/")


_config: AppConfig | None = None


def get_config() -> AppConfig:
    """Get or create the singleton AppConfig instance."""
    global _config
    if _config is None:
        _config = AppConfig()
    return _config
