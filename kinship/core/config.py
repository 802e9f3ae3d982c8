"""
Kinship Backend Core Configuration

This module manages all application configuration using Pydantic Settings.
Environment variables are loaded from .env file.
"""

import json
from functools import lru_cache
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: Literal["development", "staging", "production", "test"] = "development"
    debug: bool = True
    log_level: str = "INFO"

    # API Server
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_prefix: str = ""

    # Database
    database_url: str = Field(default="sqlite+aiosqlite:///./kinship.db")
    db_echo: bool = False
    db_read_retries: int = Field(default=2, ge=0)

    # Security
    jwt_secret_key: str = Field(
        default="change-me-in-production-this-is-32-chars", min_length=32
    )
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60

    # Social graph
    user_search_min_length: int = 2
    user_search_limit: int = 10
    event_search_limit: int = 10

    # Messaging
    message_page_size: int = 50
    unread_refresh_interval_seconds: float = 30.0

    # CORS
    cors_origins: list[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
    ]

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Any) -> list[str]:
        """Parse CORS origins from string, list, or JSON string"""
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",")]
        elif isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [v]
        elif isinstance(v, list):
            return v
        return ["*"]

    @field_validator("jwt_secret_key")
    @classmethod
    def validate_jwt_secret(cls, v: str) -> str:
        """Ensure JWT secret is strong enough"""
        if len(v) < 32:
            raise ValueError("JWT_SECRET_KEY must be at least 32 characters long")
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.env == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache for singleton pattern.
    """
    return Settings()


# Export singleton instance
settings = get_settings()
