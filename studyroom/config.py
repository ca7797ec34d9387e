from pydantic_settings import BaseSettings
from pydantic import Field, field_validator
from functools import lru_cache
from typing import List


class Settings(BaseSettings):
    # Environment
    environment: str = Field(default="development", alias="ENVIRONMENT")

    # Database - PostgreSQL for production, SQLite for development
    database_url: str = Field(
        default="sqlite:///./studyroom.db",
        alias="DATABASE_URL"
    )

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_json: bool = Field(default=False, alias="LOG_JSON")

    # CORS - Frontend URLs (comma-separated)
    allowed_origins: str = Field(
        default="http://localhost:5173,http://127.0.0.1:5173",
        alias="ALLOWED_ORIGINS"
    )

    # Rate limiting (slowapi); use redis://... when running several instances
    rate_limit_enabled: bool = Field(default=True, alias="RATE_LIMIT_ENABLED")
    rate_limit_storage_uri: str = Field(default="memory://", alias="RATE_LIMIT_STORAGE_URI")

    # ==============================================
    # Business calendar
    # ==============================================
    # "Today" for membership windows is the local calendar day here
    business_timezone: str = Field(default="Asia/Kolkata", alias="BUSINESS_TIMEZONE")

    # Membership tiers a seat can be booked under (comma-separated)
    resource_types: str = Field(default="Standard,Premium,Garden", alias="RESOURCE_TYPES")

    # How far ahead a membership may start
    max_advance_days: int = Field(default=30, alias="MAX_ADVANCE_DAYS")

    # ==============================================
    # Cash payments
    # ==============================================
    cash_collection_window_hours: int = Field(default=48, alias="CASH_COLLECTION_WINDOW_HOURS")

    # ==============================================
    # Membership identifier issuance
    # ==============================================
    membership_id_prefix: str = Field(default="", alias="MEMBERSHIP_ID_PREFIX")
    sequence_max_attempts: int = Field(default=5, alias="SEQUENCE_MAX_ATTEMPTS")
    sequence_retry_delay_ms: int = Field(default=100, alias="SEQUENCE_RETRY_DELAY_MS")

    # ==============================================
    # Lifecycle sweeper (runs inside FastAPI process)
    # ==============================================
    sweeper_enabled: bool = Field(default=True, alias="SWEEPER_ENABLED")
    sweeper_interval_minutes: int = Field(default=5, alias="SWEEPER_INTERVAL_MINUTES")
    sweeper_batch_size: int = Field(default=100, alias="SWEEPER_BATCH_SIZE")

    # Registration drafts grace windows
    draft_unverified_grace_minutes: int = Field(default=35, alias="DRAFT_UNVERIFIED_GRACE_MINUTES")
    draft_incomplete_grace_days: int = Field(default=10, alias="DRAFT_INCOMPLETE_GRACE_DAYS")

    # ==============================================
    # Notifications (email/SMS gateway webhook)
    # ==============================================
    notification_webhook_url: str = Field(default="", alias="NOTIFICATION_WEBHOOK_URL")
    notification_timeout_seconds: float = Field(default=5.0, alias="NOTIFICATION_TIMEOUT_SECONDS")

    @field_validator('cash_collection_window_hours', 'sequence_max_attempts', 'sweeper_batch_size')
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("value must be at least 1")
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
        origins = []
        for origin in self.allowed_origins.split(","):
            origin = origin.strip().rstrip("/")
            if origin and origin not in origins:
                origins.append(origin)

        return origins if origins else ["http://localhost:5173"]

    @property
    def resource_type_list(self) -> List[str]:
        """Parse configured membership tiers"""
        return [t.strip() for t in self.resource_types.split(",") if t.strip()]

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
