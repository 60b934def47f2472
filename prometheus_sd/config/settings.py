from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator
from functools import lru_cache


LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


class Settings(BaseSettings):
    """
    Settings shared by the register, unregister and discover subcommands.
    Every field can be set through a PROMETHEUS_SD_-prefixed environment
    variable or a .env file; CLI options take precedence.
    """

    model_config = SettingsConfigDict(
        env_prefix="PROMETHEUS_SD_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # ═══════════════════════════════════════════════════════════════════
    # Redis Settings
    # ═══════════════════════════════════════════════════════════════════
    REDIS_URL: str = "redis://localhost:6379"
    REDIS_TIMEOUT: int = Field(
        default=28800,
        description="Maximum seconds to keep retrying an unreachable Redis (8 hours)"
    )
    REDIS_CONNECT_TIMEOUT: float = 30.0
    REDIS_HEALTH_CHECK_INTERVAL: int = 30
    REGISTRY_KEY: str = "prometheus_sd:services"
    CHANGE_CHANNEL: str = "prometheus_sd:changes"

    # ═══════════════════════════════════════════════════════════════════
    # Backoff Settings
    # ═══════════════════════════════════════════════════════════════════
    BACKOFF_INITIAL_INTERVAL: float = 0.5
    BACKOFF_MULTIPLIER: float = 1.5
    BACKOFF_MAX_INTERVAL: float = 15 * 60
    BACKOFF_JITTER: float = 0.5

    # ═══════════════════════════════════════════════════════════════════
    # Discovery Settings
    # ═══════════════════════════════════════════════════════════════════
    RECONCILE_INTERVAL: float = Field(
        default=300.0,
        description="Seconds without notifications before a fallback re-sync"
    )

    # ═══════════════════════════════════════════════════════════════════
    # Logging
    # ═══════════════════════════════════════════════════════════════════
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    @field_validator('REDIS_TIMEOUT')
    @classmethod
    def validate_redis_timeout(cls, v):
        if v < 0:
            raise ValueError("REDIS_TIMEOUT must be >= 0")
        return v

    @field_validator(
        'REDIS_CONNECT_TIMEOUT',
        'BACKOFF_INITIAL_INTERVAL',
        'BACKOFF_MAX_INTERVAL',
        'RECONCILE_INTERVAL'
    )
    @classmethod
    def validate_positive(cls, v, info):
        if v <= 0:
            raise ValueError(f"{info.field_name} must be > 0")
        return v

    @field_validator('BACKOFF_MULTIPLIER')
    @classmethod
    def validate_multiplier(cls, v):
        if v < 1:
            raise ValueError("BACKOFF_MULTIPLIER must be >= 1")
        return v

    @field_validator('BACKOFF_JITTER')
    @classmethod
    def validate_jitter(cls, v):
        if v < 0:
            raise ValueError("BACKOFF_JITTER must be >= 0")
        return v

    @field_validator('LOG_LEVEL')
    @classmethod
    def validate_log_level(cls, v):
        level = v.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"Unknown log level: {v}")
        return level


@lru_cache()
def get_settings():
    """Get cached settings instance"""
    return Settings()
