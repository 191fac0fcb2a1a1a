"""
Shared Configuration - Resolver Settings and Environment Management
Centralized configuration management for the template resolver.

This module provides:
- Environment-based configuration
- Type-safe settings with validation
- Redis connection settings
- Cache lifetime and origin fetch settings
"""
from typing import Optional, List
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings
from enum import Enum


class Environment(str, Enum):
    """Application environment types."""
    DEVELOPMENT = "development"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class RedisSettings(BaseSettings):
    """Redis configuration settings."""

    redis_url: str = Field("redis://localhost:6379")
    redis_db: int = Field(0)
    redis_timeout: float = Field(5.0)

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


class ResolverSettings(BaseSettings):
    """Template resolution settings (TEMPLATE_* environment variables)."""

    # Local cache lifetimes, in seconds
    local_cache_ttl: int = Field(60)
    local_cache_negative_ttl: int = Field(10)

    # Origin fetch
    http_timeout: float = Field(5.0)

    # Template served when every tier misses
    default_template: str = Field("")
    template_handler_name: str = Field("erb")

    # Naming
    template_name_prefix: str = Field("redis:")
    redis_key_prefix: str = Field("rlt:")

    # Per-key deduplication of concurrent origin fetches
    single_flight_enabled: bool = Field(False)

    @field_validator("local_cache_ttl", "local_cache_negative_ttl")
    @classmethod
    def validate_ttl(cls, v):
        if v <= 0:
            raise ValueError("Cache TTL must be a positive number of seconds")
        return v

    @field_validator("local_cache_negative_ttl")
    @classmethod
    def validate_negative_ttl(cls, v, info):
        positive_ttl = info.data.get("local_cache_ttl")
        if positive_ttl is not None and v >= positive_ttl:
            raise ValueError("Negative TTL must be shorter than the positive TTL")
        return v

    @field_validator("http_timeout")
    @classmethod
    def validate_timeout(cls, v):
        if v <= 0:
            raise ValueError("HTTP timeout must be positive")
        return v

    @field_validator("template_name_prefix")
    @classmethod
    def validate_name_prefix(cls, v):
        if not v.endswith(":"):
            raise ValueError("Template name prefix must end with ':'")
        return v

    class Config:
        env_file = ".env"
        env_prefix = "TEMPLATE_"
        case_sensitive = False
        extra = "ignore"


class MonitoringSettings(BaseSettings):
    """Logging configuration settings."""

    log_level: LogLevel = Field(LogLevel.INFO)
    log_format: str = Field("colored")

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v):
        if v not in ("json", "colored", "standard"):
            raise ValueError("Log format must be one of: json, colored, standard")
        return v

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


class Settings(BaseSettings):
    """Main application settings."""

    environment: Environment = Field(Environment.DEVELOPMENT)

    # Component settings
    redis: RedisSettings = Field(default_factory=RedisSettings)
    resolver: ResolverSettings = Field(default_factory=ResolverSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == Environment.PRODUCTION

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get application settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next access reloads them."""
    global _settings
    _settings = None


def validate_configuration(settings: Optional[Settings] = None) -> List[str]:
    """
    Validate the configuration and return any errors.

    Returns:
        List of validation error messages
    """
    errors = []

    try:
        settings = settings or get_settings()

        if not settings.redis.redis_url.startswith(("redis://", "rediss://", "unix://")):
            errors.append("REDIS_URL must use the redis://, rediss:// or unix:// scheme")

        if settings.is_production() and not settings.resolver.default_template:
            errors.append("A default template should be configured in production")

        if not settings.resolver.redis_key_prefix:
            errors.append("Redis key prefix must not be empty")

    except Exception as e:
        errors.append(f"Configuration validation error: {str(e)}")

    return errors

