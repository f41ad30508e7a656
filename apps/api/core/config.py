"""
Settings for the API, the Celery worker and tests.

Everything comes from the environment (or .env). Strava scheduling, sync
paging and cache lifetimes are tunable here without code changes.
"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import List, Optional
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    # Database Configuration
    POSTGRES_USER: str = Field(default="postgres")
    POSTGRES_PASSWORD: str = Field(default="postgres")
    POSTGRES_DB: str = Field(default="event_scoring")
    POSTGRES_HOST: str = Field(default="postgres")
    POSTGRES_PORT: int = Field(default=5432)
    # Full URL override (e.g. "sqlite://" for local runs and tests)
    DATABASE_URL: Optional[str] = Field(default=None)

    # Database Pool Configuration
    DB_POOL_SIZE: int = Field(default=20)
    DB_MAX_OVERFLOW: int = Field(default=10)
    DB_POOL_TIMEOUT: int = Field(default=30)
    DB_POOL_RECYCLE: int = Field(default=3600)  # 1 hour

    # Redis Configuration
    REDIS_URL: str = Field(default="redis://redis:6379/0")

    # Strava API Configuration
    STRAVA_CLIENT_ID: Optional[str] = Field(default=None)
    STRAVA_CLIENT_SECRET: Optional[str] = Field(default=None)
    STRAVA_API_BASE: str = Field(default="https://www.strava.com/api/v3")
    STRAVA_OAUTH_TOKEN_URL: str = Field(default="https://www.strava.com/oauth/token")
    STRAVA_REQUEST_TIMEOUT_S: int = Field(default=30)

    # Strava request scheduling
    # Strava publishes 100 requests / 15 min; we stay below it.
    STRAVA_RATE_LIMIT_QUOTA: int = Field(default=90, ge=1)
    STRAVA_RATE_WINDOW_S: int = Field(default=900, ge=1)
    # Minimum spacing between two consecutive upstream calls.
    STRAVA_MIN_REQUEST_SPACING_S: float = Field(default=1.0, ge=0)
    # Re-check interval while the window is exhausted.
    STRAVA_THROTTLE_POLL_S: float = Field(default=60.0, gt=0)
    STRAVA_MAX_RETRIES: int = Field(default=3, ge=0)
    # Refresh access tokens that expire within this many seconds.
    STRAVA_TOKEN_REFRESH_MARGIN_S: int = Field(default=300)

    # Token Encryption
    TOKEN_ENCRYPTION_KEY: Optional[str] = Field(default=None)

    # Activity detail cache
    ACTIVITY_CACHE_TTL_HOURS: int = Field(default=24, ge=1)

    # Incremental sync
    SYNC_DEFAULT_LOOKBACK_DAYS: int = Field(default=30)
    SYNC_MAX_PAGES: int = Field(default=10, ge=1)
    SYNC_PAGE_SIZE: int = Field(default=30, ge=1, le=200)
    # Comma-separated upstream activity kinds that are scored.
    SUPPORTED_ACTIVITY_KINDS: str = Field(default="Run")

    # HTTP API: comma-separated allowed origins (production)
    CORS_ORIGINS: Optional[str] = Field(default=None)

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")  # json or text

    # Celery Configuration
    CELERY_BROKER_URL: str = Field(default="redis://redis:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://redis:6379/0")

    # Cache Configuration
    CACHE_TTL_DEFAULT: int = Field(default=300)  # 5 minutes
    LEADERBOARD_CACHE_TTL: int = Field(default=300)  # 5 minutes

    # Environment
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=False)

    @property
    def supported_activity_kinds(self) -> List[str]:
        return [k.strip() for k in self.SUPPORTED_ACTIVITY_KINDS.split(",") if k.strip()]

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql://{self.POSTGRES_USER}:"
            f"{self.POSTGRES_PASSWORD}@"
            f"{self.POSTGRES_HOST}:"
            f"{self.POSTGRES_PORT}/"
            f"{self.POSTGRES_DB}"
        )


# Global settings instance
settings = Settings()
