"""
Application settings using Pydantic Settings.

Loads configuration from environment variables and .env file.
"""

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with validation and defaults."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server
    host: str = Field(default="127.0.0.1", description="Server bind address")
    port: int = Field(default=3000, ge=1, le=65535, description="Server port")
    debug: bool = Field(default=False, description="Debug mode")
    environment: str = Field(default="development", description="Deployment environment")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_json: bool = Field(default=True, description="Emit JSON log lines")
    log_file: str = Field(default="", description="Optional log file path")

    # Security
    cors_origins: str = Field(
        default="http://localhost:5173",
        description="Comma-separated CORS origins",
    )

    # Upstream - Gemini
    gemini_api_key: str = Field(default="", description="Generative Language API key")
    gemini_base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        description="Generative Language API base URL",
    )
    gemini_model: str = Field(default="gemini-1.5-flash", description="Model used for generation")
    gemini_timeout_seconds: int = Field(
        default=60, ge=5, le=300, description="Upstream request timeout"
    )

    # Upstream - external data passthrough
    external_data_url: str = Field(default="", description="External data endpoint to proxy")
    external_data_api_key: str = Field(default="", description="Secret key for the external data endpoint")

    # Outbound pacing and retries
    retry_max_retries: int = Field(
        default=3, ge=0, le=10, description="Max retries on upstream rate limits"
    )
    retry_min_interval_ms: int = Field(
        default=4000, ge=0, description="Minimum gap between upstream dispatches"
    )
    retry_backoff_base_ms: int = Field(
        default=1000, ge=0, description="First backoff delay, doubled per retry"
    )
    retry_jitter_max_ms: int = Field(
        default=500, ge=0, description="Upper bound of random jitter added to backoff"
    )

    # Request limits
    max_words_per_request: int = Field(
        default=20, ge=1, le=200, description="Max words accepted in one vocabulary request"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in valid:
            raise ValueError(f"log_level must be one of {valid}")
        return upper

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins into a list."""
        if not self.cors_origins:
            return []
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def upstream_configured(self) -> bool:
        return bool(self.gemini_api_key)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
