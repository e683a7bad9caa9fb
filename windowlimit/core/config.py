from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Limiter settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Redis settings (in-memory store is used when disabled)
    redis_enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"

    # Window defaults
    limiter_key_prefix: str = "limit"
    limiter_default_max: int = 2500
    limiter_default_duration_ms: int = 3_600_000

    # Optimistic retry settings
    limiter_max_attempts: int = 100  # 0 = retry forever
    limiter_retry_base_delay: float = 0.0  # seconds, 0 disables backoff
    limiter_retry_max_delay: float = 0.05

    # If True, deny requests when the store is unavailable
    rate_limit_fail_closed: bool = False

    @field_validator("limiter_default_max", "limiter_default_duration_ms")
    @classmethod
    def validate_window_positive(cls, v: int) -> int:
        """Validate window defaults are positive."""
        if v < 1:
            raise ValueError("Window maximum and duration must be at least 1")
        return v

    @field_validator("limiter_max_attempts")
    @classmethod
    def validate_max_attempts(cls, v: int) -> int:
        """Validate attempt limit is not negative."""
        if v < 0:
            raise ValueError("limiter_max_attempts must be >= 0 (0 = unbounded)")
        return v

    @field_validator("limiter_retry_base_delay", "limiter_retry_max_delay")
    @classmethod
    def validate_delay_non_negative(cls, v: float) -> float:
        """Validate backoff delays are not negative."""
        if v < 0:
            raise ValueError("Retry delays must not be negative")
        return v

    @field_validator("limiter_key_prefix")
    @classmethod
    def validate_key_prefix(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("limiter_key_prefix must not be empty")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
