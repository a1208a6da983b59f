"""Configuration using pydantic-settings."""

from pydantic import model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings with validation and constants."""

    host: str = "0.0.0.0"  # nosec B104 - Required for container deployment
    port: int = 8000
    log_level: str = "INFO"
    log_file: str | None = None

    database_url: str = "sqlite+aiosqlite:///./future_self.db"
    redis_url: str | None = None

    # LLM settings
    llm_model: str = "anthropic/claude-3-5-haiku-latest"
    llm_api_key: str | None = None
    llm_timeout: int = 60
    letter_max_tokens: int = 1000

    # Cache namespaces
    cache_namespace: str = "future_self"
    idempotency_namespace: str = "future_self:letter_gen"
    retry_namespace: str = "future_self:retry_queue"

    # Cache TTLs
    simulation_cache_ttl_seconds: int = 5 * 60
    letter_cache_ttl_seconds: int = 30 * 60

    # Idempotency
    idempotency_ttl_seconds: int = 30
    triggered_idempotency_ttl_seconds: int = 5 * 60
    idempotency_wait_initial_seconds: float = 0.5
    idempotency_wait_multiplier: float = 1.5
    idempotency_wait_max_interval_seconds: float = 2.0
    idempotency_wait_timeout_seconds: float = 15.0

    # Letter variants
    letter_experiment: str = "letter_mode"
    letter_variants: list[str] = ["gratitude", "regret"]
    default_letter_variant: str = "gratitude"
    future_age: int = 60

    # Batch job
    weekly_letter_cron: str = "0 9 * * 1"
    retry_cron: str = "0 * * * *"
    scheduler_timezone: str = "Africa/Lagos"
    scheduler_enabled: bool = True
    batch_concurrency: int = 5
    estimated_seconds_per_subject: float = 30.0
    lock_ttl_buffer_multiplier: float = 1.5
    min_lock_ttl_seconds: int = 5 * 60
    max_lock_ttl_seconds: int = 3 * 60 * 60
    lock_extend_divisor: int = 6

    # Retry queue
    retry_lock_ttl_seconds: int = 10 * 60
    retry_max_attempts: int = 3
    retry_backoff_seconds: list[int] = [5 * 60, 15 * 60, 60 * 60]
    retry_entry_ttl_seconds: int = 24 * 60 * 60

    @property
    def min_lock_ttl_ms(self) -> int:
        return self.min_lock_ttl_seconds * 1000

    @property
    def max_lock_ttl_ms(self) -> int:
        return self.max_lock_ttl_seconds * 1000

    @model_validator(mode="after")
    def validate_lock_bounds(self) -> "Settings":
        """Validate that lock TTL bounds and batch sizing are coherent."""
        if self.min_lock_ttl_seconds <= 0 or self.retry_lock_ttl_seconds <= 0:
            raise ValueError("min_lock_ttl_seconds and retry_lock_ttl_seconds must be positive")
        if self.min_lock_ttl_seconds > self.max_lock_ttl_seconds:
            raise ValueError(
                "min_lock_ttl_seconds must not exceed max_lock_ttl_seconds "
                f"({self.min_lock_ttl_seconds} > {self.max_lock_ttl_seconds})"
            )
        if self.batch_concurrency < 1:
            raise ValueError("batch_concurrency must be at least 1")
        if self.lock_extend_divisor < 2:
            raise ValueError("lock_extend_divisor must be at least 2")
        return self

    @model_validator(mode="after")
    def validate_retry_policy(self) -> "Settings":
        """Validate the retry ladder and letter variants."""
        if not self.retry_backoff_seconds:
            raise ValueError("retry_backoff_seconds must contain at least one delay")
        if self.retry_max_attempts < 1:
            raise ValueError("retry_max_attempts must be at least 1")
        if self.default_letter_variant not in self.letter_variants:
            raise ValueError(
                f"default_letter_variant '{self.default_letter_variant}' "
                f"is not one of {self.letter_variants}"
            )
        return self

    class Config:
        """Pydantic config."""

        env_prefix = "FUTURE_SELF_"
        env_file = ".env"
        extra = "ignore"


settings = Settings()


def get_settings() -> Settings:
    """Get settings instance (for dependency injection)."""
    return settings
