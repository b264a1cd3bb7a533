from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from functools import lru_cache
from typing import List


class Settings(BaseSettings):
    # Environment
    environment: str = Field(default="development", alias="ENVIRONMENT")

    # Database - PostgreSQL for production, SQLite for development
    database_url: str = Field(
        default="sqlite:///./tablehold.db",
        alias="DATABASE_URL"
    )

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")

    # CORS - widget / dashboard origins (comma-separated)
    allowed_origins: str = Field(
        default="http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173,http://127.0.0.1:5173",
        alias="ALLOWED_ORIGINS"
    )

    # ==============================================
    # Holds & Confirmation
    # ==============================================
    # Default hold TTL; tenants may override with tenants.hold_ttl_seconds
    hold_ttl_seconds: int = Field(default=600, alias="HOLD_TTL_SECONDS")

    # How long an idempotency record is kept for replays
    idempotency_retention_hours: int = Field(default=48, alias="IDEMPOTENCY_RETENTION_HOURS")

    max_party_size: int = Field(default=50, alias="MAX_PARTY_SIZE")

    # Bounded retry for idempotent storage reads
    storage_read_retry_attempts: int = Field(default=3, alias="STORAGE_READ_RETRY_ATTEMPTS")

    # ==============================================
    # Sweeper (runs inside FastAPI process or worker.py)
    # ==============================================
    sweeper_enabled: bool = Field(default=True, alias="SWEEPER_ENABLED")
    sweeper_interval_seconds: int = Field(default=30, alias="SWEEPER_INTERVAL_SECONDS")
    sweeper_batch_size: int = Field(default=500, alias="SWEEPER_BATCH_SIZE")

    # 0 disables the automatic no-show marking
    no_show_grace_minutes: int = Field(default=0, alias="NO_SHOW_GRACE_MINUTES")

    # ==============================================
    # Notifications (fire-and-forget webhook)
    # ==============================================
    notification_webhook_url: str = Field(default="", alias="NOTIFICATION_WEBHOOK_URL")
    notification_timeout_seconds: int = Field(default=10, alias="NOTIFICATION_TIMEOUT_SECONDS")
    notification_max_attempts: int = Field(default=5, alias="NOTIFICATION_MAX_ATTEMPTS")
    notification_batch_size: int = Field(default=50, alias="NOTIFICATION_BATCH_SIZE")

    # Rate limiting (slowapi)
    rate_limit_enabled: bool = Field(default=True, alias="RATE_LIMIT_ENABLED")
    rate_limit_storage_uri: str = Field(default="memory://", alias="RATE_LIMIT_STORAGE_URI")
    widget_rate_limit: str = Field(default="60/minute", alias="WIDGET_RATE_LIMIT")

    @field_validator('hold_ttl_seconds')
    @classmethod
    def validate_hold_ttl(cls, v: int) -> int:
        """Holds must live long enough for a guest to fill in the form"""
        if v < 30:
            raise ValueError("HOLD_TTL_SECONDS must be at least 30 seconds")
        return v

    @field_validator('max_party_size', 'sweeper_interval_seconds', 'sweeper_batch_size')
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("value must be positive")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def cors_origins(self) -> List[str]:
        """
        Parse allowed origins from comma-separated string.
        Returns a list suitable for CORSMiddleware.
        """
        if not self.allowed_origins:
            return ["http://localhost:5173"]

        origins = []
        for origin in self.allowed_origins.split(","):
            origin = origin.strip().rstrip("/")
            if origin and origin not in origins:
                origins.append(origin)

        return origins if origins else ["http://localhost:5173"]

    class Config:
        env_file = ".env"
        extra = "ignore"
        populate_by_name = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Initialize settings on module load
settings = get_settings()
