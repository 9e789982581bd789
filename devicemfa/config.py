"""Application configuration settings."""

import secrets
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Server settings with validation and defaults."""

    model_config = SettingsConfigDict(
        env_prefix="MFA_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Database Configuration
    database_url: str = Field(
        default="sqlite+aiosqlite:///./devicemfa.db",
        description="Database connection URL"
    )
    sqlite_busy_timeout: float = Field(
        default=15.0,
        description="Seconds a SQLite connection waits for the write lock"
    )

    # Security Configuration
    secret_key: str = Field(
        default_factory=lambda: secrets.token_urlsafe(32),
        description="Secret key for signing success tokens"
    )
    algorithm: str = Field(default="HS256", description="JWT algorithm")
    access_token_expire_minutes: int = Field(
        default=60, description="Success token expiration time"
    )

    # Credential lifetimes
    challenge_ttl_seconds: int = Field(
        default=300, description="Lifetime of a signature challenge"
    )
    code_ttl_seconds: int = Field(
        default=300, description="Lifetime of an out-of-band code"
    )
    restrict_code_addresses: bool = Field(
        default=True,
        description="Only deliver codes to addresses registered for the username"
    )

    # Environment Configuration
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Debug mode")
    api_prefix: str = Field(default="/api/v1", description="Mount point of the REST API")

    # CORS Configuration
    allowed_origins: List[str] = Field(
        default=["*"],
        description="Allowed CORS origins"
    )
    allowed_methods: List[str] = Field(
        default=["GET", "POST"],
        description="Allowed HTTP methods"
    )
    allowed_headers: List[str] = Field(
        default=["*"], description="Allowed headers"
    )

    # Maintenance
    purge_interval_seconds: int = Field(
        default=0,
        description="Interval for deleting expired challenges and codes (0 disables)"
    )

    # Logging Configuration
    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment value."""
        allowed = ["development", "staging", "production"]
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()

    @field_validator("challenge_ttl_seconds", "code_ttl_seconds")
    @classmethod
    def validate_ttl(cls, v: int) -> int:
        """Credential lifetimes must be positive."""
        if v <= 0:
            raise ValueError("TTL must be a positive number of seconds")
        return v


# Global settings instance
settings = Settings()
