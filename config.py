from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database
    DATABASE_URL: str = "sqlite:///./pricing.db"
    DEBUG: bool = False  # Echo SQL

    # App Settings
    APP_NAME: str = "Pricing Rules API"
    APP_VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"

    # Money
    CURRENCY_DECIMALS: int = 2  # Minor unit exponent (2 => cents)

    # Checkout
    FINALIZE_MAX_ATTEMPTS: int = 3  # Retries on counter write conflicts
    MAX_REARBITRATION_PASSES: int = 1  # Re-runs of the arbiter after a lost reservation


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
