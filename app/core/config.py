# app/core/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,  # Environment vars are uppercase
        extra="ignore",      # Ignore unexpected vars instead of raising
    )

    # Core application settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./gym_booking.db"
    DATABASE_ECHO: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 8101
    DEBUG: bool = False
    ENVIRONMENT: str = "development"
    FRONTEND_APP_URL: str | None = None
    LOG_FILE: str = "app.log"

    # CORS settings
    ALLOWED_ORIGINS: list[str] = ["*"]  # In production, specify actual origins
    ALLOW_CREDENTIALS: bool = True
    ALLOWED_METHODS: list[str] = ["*"]
    ALLOWED_HEADERS: list[str] = ["*"]

    # JWT settings (tokens are issued by the auth provider, only verified here)
    JWT_SECRET: str = "change-me"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRE_MINUTES: int = 60

    # Payment gateway settings
    STRIPE_SECRET_KEY: str | None = None
    STRIPE_WEBHOOK_SECRET: str | None = None
    DEFAULT_CURRENCY: str = "eur"

    # Booking engine
    LEDGER_MAX_RETRIES: int = 3
    WAITLIST_MAX_PROMOTION_ATTEMPTS: int = 5
    ALLOW_WAITLIST: bool = True
    GYM_TIMEZONE: str = "UTC"
    # 0 disables the in-process sweep (an external cron calls /memberships/activate-due)
    MEMBERSHIP_ACTIVATOR_INTERVAL_SECONDS: int = 0


def _validate_settings(settings: Settings) -> None:
    """Validate critical application settings."""
    if not settings.DATABASE_URL:
        raise ValueError("DATABASE_URL is required")
    if settings.LEDGER_MAX_RETRIES < 1:
        raise ValueError("LEDGER_MAX_RETRIES must be at least 1")
    if settings.WAITLIST_MAX_PROMOTION_ATTEMPTS < 1:
        raise ValueError("WAITLIST_MAX_PROMOTION_ATTEMPTS must be at least 1")

    # Environment-specific validations
    if settings.ENVIRONMENT == "production" and settings.DEBUG:
        print("WARNING: DEBUG is enabled in production. Consider setting DEBUG=False.")
    if settings.ENVIRONMENT == "production":
        if not settings.STRIPE_SECRET_KEY:
            raise ValueError("STRIPE_SECRET_KEY is required in production")
        if not settings.STRIPE_WEBHOOK_SECRET:
            raise ValueError("STRIPE_WEBHOOK_SECRET is required in production")
        if settings.JWT_SECRET == "change-me":
            raise ValueError("JWT_SECRET must be set in production")


# Initialize settings with error handling
try:
    settings = Settings()
    _validate_settings(settings)
except Exception as e:
    print(f"Error initializing settings: {e}")
    raise
