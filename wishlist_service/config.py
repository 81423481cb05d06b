from typing import Final, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import DEFAULT_PORT, MIN_QR_TOKEN_BYTES


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env files."""

    # Server configuration
    debug: bool = Field(default=True, description="Enable debug mode")
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=DEFAULT_PORT, ge=1, le=65535, description="Server port")

    # Database configuration
    database_url: str = Field(
        default="sqlite:///./wishlists.db", description="Database connection URL"
    )

    # Application configuration
    app_name: str = Field(default="Wishlist Service", description="Application name")
    version: str = Field(default="1.0.0", description="Application version")

    # Wishlist lifecycle configuration
    wishlist_ttl_hours: float = Field(
        default=24, ge=0, description="Hours until a new wishlist expires"
    )
    max_items_per_wishlist: int = Field(
        default=50, ge=1, description="Maximum number of items in one wishlist"
    )
    default_currency: str = Field(
        default="HKD",
        min_length=3,
        max_length=3,
        description="ISO 4217 currency used when an item does not carry one",
    )
    qr_token_bytes: int = Field(
        default=32,
        ge=MIN_QR_TOKEN_BYTES,
        description="Random bytes per QR token (hex encoded, so twice as many chars)",
    )
    default_processed_by: str = Field(
        default="POS", description="processed_by tag when completion omits it"
    )

    # Catalog cache configuration
    cache_mode: Literal["memory", "redis"] = Field(
        default="memory", description="Catalog cache backend"
    )
    redis_url: str | None = Field(
        default=None, description="Redis URL, required when cache_mode is redis"
    )
    catalog_cache_ttl_seconds: int = Field(
        default=30, ge=1, description="TTL for cached catalog lookups"
    )
    catalog_collections: list[str] = Field(
        default_factory=list,
        description="Collections product listings may filter by; empty allows any",
    )

    # Logging / telemetry configuration
    log_to_file: bool = Field(
        default=False, description="Force logging to file even in debug mode"
    )
    enable_telemetry: bool = Field(
        default=False, description="Enable OpenTelemetry tracing and metrics export"
    )

    # Pydantic Settings configuration
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False, extra="ignore"
    )

    @field_validator("default_currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        """Currency codes are stored upper case."""
        return v.upper()


# Global settings instance
settings: Final = Settings()
